import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


class Settings:
    # persistence
    DATABASE_URL: str = os.getenv("WORKFLOW_DATABASE_URL", "sqlite+aiosqlite:///./workflow_gate.db")
    EVIDENCE_DIR: str = os.getenv("WORKFLOW_EVIDENCE_DIR", "./evidence")
    # confirm tokens and sessions
    CONFIRM_TOKEN_TTL_SECONDS: int = int(os.getenv("CONFIRM_TOKEN_TTL_SECONDS", "1200"))
    SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", "3600"))
    # outbound ledger calls
    ADAPTER_TIMEOUT_SECONDS: float = float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "20"))
    # read-only analysis queries only; the execute path never retries
    ANALYSIS_READ_ATTEMPTS: int = int(os.getenv("ANALYSIS_READ_ATTEMPTS", "3"))
    ANALYSIS_READ_BACKOFF_SECONDS: float = float(os.getenv("ANALYSIS_READ_BACKOFF_SECONDS", "0.5"))
    # policy (see policy_store.load_policy_config for the POLICY_* / AUTONOMOUS_* keys)
    POLICY_FILE: str = os.getenv("POLICY_FILE", "")
    # Layer-2 enforcement; empty means the dev-only allow-all backend
    ENFORCEMENT_URL: str = os.getenv("ENFORCEMENT_URL", "")
    ENFORCEMENT_TOKEN: str = os.getenv("ENFORCEMENT_TOKEN", "")
    ENFORCEMENT_TIMEOUT_SECONDS: float = float(os.getenv("ENFORCEMENT_TIMEOUT_SECONDS", "5"))
    # observability
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: str = os.getenv("LOG_DIR", "")
    METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
