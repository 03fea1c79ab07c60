"""Domain records for buyers, groups, unlock schedules and token transfers."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

_log = logging.getLogger(__name__)

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {char: index for index, char in enumerate(_BASE58_ALPHABET)}
_PUBKEY_BYTES = 32
_MAX_PUBKEY_CHARS = 44


class InvalidWalletError(ValueError):
    """Raised when a wallet address is not a valid base58 public key."""


def validate_wallet(wallet: str) -> str:
    """Return ``wallet`` unchanged if it is a base58 encoding of 32 bytes."""
    if not isinstance(wallet, str):
        raise InvalidWalletError(f"Wallet must be a string, got {type(wallet).__name__}")
    if not wallet or len(wallet) > _MAX_PUBKEY_CHARS:
        raise InvalidWalletError(f"Invalid wallet length: {wallet!r}")
    value = 0
    for char in wallet:
        try:
            value = value * 58 + _BASE58_INDEX[char]
        except KeyError:
            raise InvalidWalletError(
                f"Invalid base58 character {char!r} in wallet {wallet!r}"
            ) from None
    leading_zeros = len(wallet) - len(wallet.lstrip("1"))
    decoded_len = leading_zeros + (value.bit_length() + 7) // 8
    if decoded_len != _PUBKEY_BYTES:
        raise InvalidWalletError(
            f"Wallet {wallet!r} decodes to {decoded_len} bytes, expected {_PUBKEY_BYTES}"
        )
    return wallet


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Status(str, Enum):
    """Lifecycle state of a schedule entry or a transaction."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class Buyer:
    """A wallet that paid SOL and is owed tokens."""

    wallet: str
    paid_sol: float
    group_id: int
    received_spl: float = 0.0
    received_percent: float = 0.0
    pending_spl: float = 0.0
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.wallet = validate_wallet(self.wallet)

    def total_spl(self, spl_price: float) -> float:
        """Tokens bought at ``spl_price`` SOL per token."""
        return self.paid_sol / spl_price


@dataclass
class Group:
    """A vesting group with its price and unlock rules."""

    id: int
    spl_share_percent: float
    spl_price: float
    initial_unlock_percent: float
    unlock_interval_seconds: int
    unlock_percent_per_interval: float
    spl_total: float = 0.0
    unlock_task_spawned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Schedule:
    """One planned token unlock for a buyer."""

    group_id: int
    buyer_wallet: str
    scheduled_at: datetime
    amount: float
    percent: float
    id: int = 0
    status: Status = Status.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Transaction:
    """A record of one attempted token transfer."""

    buyer_wallet: str
    group_id: int
    amount: float
    percent: float
    status: Status
    id: int = 0
    error_message: str | None = None
    sent_at: datetime | None = field(default_factory=_utcnow)
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise ValueError(f"Invalid datetime value: {value!r}")


def _buyer_from_record(record: dict[str, str | None]) -> Buyer:
    def optional_float(name: str) -> float:
        value = record.get(name)
        return 0.0 if value is None else float(value)

    error = record.get("error")
    return Buyer(
        wallet=record["wallet"],
        paid_sol=float(record["paid_sol"]),
        group_id=int(record["group_id"]),
        received_spl=optional_float("received_spl"),
        received_percent=optional_float("received_percent"),
        pending_spl=optional_float("pending_spl"),
        error=error or None,
        created_at=_parse_datetime(record.get("created_at")),
        updated_at=_parse_datetime(record.get("updated_at")),
    )


def load_buyers_from_csv(path: str | Path) -> list[Buyer]:
    """Read buyers from a CSV file with a header row, skipping bad records."""
    buyers: list[Buyer] = []
    with open(path, newline="", encoding="utf-8") as handle:
        for line_no, record in enumerate(csv.DictReader(handle), start=2):
            try:
                buyers.append(_buyer_from_record(record))
            except (KeyError, ValueError, TypeError) as exc:
                _log.error("Error deserializing buyer on line %d: %s", line_no, exc)
    _log.debug("Loaded buyers from CSV file: %r", buyers)
    if not buyers:
        raise ValueError("No buyers found in the CSV file")
    return buyers


def _require(entry: dict[str, Any], name: str) -> Any:
    if name not in entry:
        raise ValueError(f"Missing field {name!r} in group entry")
    return entry[name]


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Field {name!r} must be an integer, got {value!r}")
    return value


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Field {name!r} must be a number, got {value!r}")
    return float(value)


def _group_from_entry(entry: Any, tokens_amount: float) -> Group:
    if not isinstance(entry, dict):
        raise ValueError(f"Group entry must be a mapping, got {entry!r}")
    share = _as_float(_require(entry, "spl_share_percent"), "spl_share_percent")
    spawned = entry.get("unlock_task_spawned", False)
    if not isinstance(spawned, bool):
        raise ValueError(f"Field 'unlock_task_spawned' must be a boolean, got {spawned!r}")
    return Group(
        id=_as_int(_require(entry, "id"), "id"),
        spl_share_percent=share,
        spl_price=_as_float(_require(entry, "spl_price"), "spl_price"),
        initial_unlock_percent=_as_float(
            _require(entry, "initial_unlock_percent"), "initial_unlock_percent"
        ),
        unlock_interval_seconds=_as_int(
            _require(entry, "unlock_interval_seconds"), "unlock_interval_seconds"
        ),
        unlock_percent_per_interval=_as_float(
            _require(entry, "unlock_percent_per_interval"), "unlock_percent_per_interval"
        ),
        spl_total=share * tokens_amount,
        unlock_task_spawned=spawned,
        created_at=_parse_datetime(entry.get("created_at")),
        updated_at=_parse_datetime(entry.get("updated_at")),
    )


def load_groups_from_yaml(path: str | Path, tokens_amount: float) -> list[Group]:
    """Read groups from a YAML list and set each group's token total."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if not isinstance(data, list):
        raise ValueError("Groups file must contain a list of groups")
    groups = [_group_from_entry(entry, tokens_amount) for entry in data]
    _log.debug("Loaded groups from YAML file: %r", groups)
    return groups