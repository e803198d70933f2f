"""Network registry: production classification and per-ledger formats."""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import InputError


@dataclass(frozen=True)
class LedgerFormat:
    """Canonical address / transaction-hash formats for one ledger family."""
    ledger: str
    address_pattern: str
    tx_hash_pattern: str
    # unanchored variant used when scanning free text
    address_search: str
    lowercase_addresses: bool = False

    @property
    def address_body(self) -> str:
        """Search pattern without word boundaries, for embedding in larger patterns."""
        return re.sub(r"^\\b|\\b$", "", self.address_search)

    def is_address(self, value: str) -> bool:
        return re.fullmatch(self.address_pattern, value or "") is not None

    def is_tx_hash(self, value: str) -> bool:
        return re.fullmatch(self.tx_hash_pattern, value or "") is not None

    def find_addresses(self, text: str) -> List[str]:
        found: List[str] = []
        for match in re.finditer(self.address_search, text or ""):
            value = self.normalize_address(match.group(0))
            if value not in found:
                found.append(value)
        return found

    def normalize_address(self, value: str) -> str:
        value = value.strip()
        return value.lower() if self.lowercase_addresses else value


_BASE58 = "[1-9A-HJ-NP-Za-km-z]"

LEDGER_FORMATS: Dict[str, LedgerFormat] = {
    "evm": LedgerFormat(
        ledger="evm",
        address_pattern=r"0x[a-fA-F0-9]{40}",
        tx_hash_pattern=r"0x[a-fA-F0-9]{64}",
        address_search=r"\b0x[a-fA-F0-9]{40}\b",
        lowercase_addresses=True,
    ),
    "solana": LedgerFormat(
        ledger="solana",
        address_pattern=_BASE58 + r"{32,44}",
        tx_hash_pattern=_BASE58 + r"{64,88}",
        address_search=r"\b" + _BASE58 + r"{32,44}\b",
    ),
    "sui": LedgerFormat(
        ledger="sui",
        address_pattern=r"0x[a-fA-F0-9]{64}",
        tx_hash_pattern=_BASE58 + r"{43,44}",
        address_search=r"\b0x[a-fA-F0-9]{64}\b",
        lowercase_addresses=True,
    ),
    "near": LedgerFormat(
        ledger="near",
        address_pattern=r"(?:[a-f0-9]{64}|(?:[a-z\d]+[-_])*[a-z\d]+(?:\.(?:[a-z\d]+[-_])*[a-z\d]+)*\.(?:near|testnet))",
        tx_hash_pattern=_BASE58 + r"{43,44}",
        address_search=r"\b(?:[a-z\d]+[-_])*[a-z\d]+(?:\.(?:[a-z\d]+[-_])*[a-z\d]+)*\.(?:near|testnet)\b",
    ),
    "kaspa": LedgerFormat(
        ledger="kaspa",
        address_pattern=r"kaspa(?:test)?:[a-z0-9]{61,63}",
        tx_hash_pattern=r"[a-f0-9]{64}",
        address_search=r"\bkaspa(?:test)?:[a-z0-9]{61,63}\b",
    ),
    "starknet": LedgerFormat(
        ledger="starknet",
        address_pattern=r"0x[a-fA-F0-9]{1,64}",
        tx_hash_pattern=r"0x[a-fA-F0-9]{1,64}",
        address_search=r"\b0x[a-fA-F0-9]{50,64}\b",
        lowercase_addresses=True,
    ),
}


@dataclass(frozen=True)
class NetworkProfile:
    name: str
    ledger: str
    production_like: bool

    @property
    def format(self) -> LedgerFormat:
        return LEDGER_FORMATS[self.ledger]


_NETWORKS: Dict[str, NetworkProfile] = {}


def register_network(name: str, ledger: str, production_like: bool = True) -> NetworkProfile:
    if ledger not in LEDGER_FORMATS:
        raise ValueError(f"unknown ledger family '{ledger}'")
    profile = NetworkProfile(name=name.strip().lower(), ledger=ledger, production_like=production_like)
    _NETWORKS[profile.name] = profile
    return profile


for _name, _ledger, _prod in (
    ("ethereum", "evm", True),
    ("polygon", "evm", True),
    ("bsc", "evm", True),
    ("base", "evm", True),
    ("arbitrum", "evm", True),
    ("optimism", "evm", True),
    ("monad", "evm", True),
    ("sepolia", "evm", False),
    ("bsc-testnet", "evm", False),
    ("base-sepolia", "evm", False),
    ("monad-testnet", "evm", False),
    ("solana", "solana", True),
    ("solana-devnet", "solana", False),
    ("sui", "sui", True),
    ("sui-testnet", "sui", False),
    ("near", "near", True),
    ("near-testnet", "near", False),
    ("kaspa", "kaspa", True),
    ("kaspa-testnet", "kaspa", False),
    ("starknet", "starknet", True),
    ("starknet-sepolia", "starknet", False),
):
    register_network(_name, _ledger, _prod)


def get_network(name: Optional[str]) -> NetworkProfile:
    key = (name or "").strip().lower()
    profile = _NETWORKS.get(key)
    if profile is None:
        raise InputError(
            "unknown-network",
            f"network '{name}' is not registered",
            remediation="Use one of: " + ", ".join(sorted(_NETWORKS)),
        )
    return profile


def known_networks() -> List[str]:
    return sorted(_NETWORKS)


def is_production_like(name: str) -> bool:
    """Unregistered networks are treated as production-like."""
    profile = _NETWORKS.get((name or "").strip().lower())
    return True if profile is None else profile.production_like
