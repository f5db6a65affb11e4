"""
Identifier checks for the public entry points.

The core treats identifiers as opaque strings; these checks only reject
input that no Cardano provider could ever resolve.
"""

import re
from dataclasses import dataclass, field

from chainfeed.services.errors import ValidationError

LOVELACE = "lovelace"
POLICY_ID_LENGTH = 56
TX_HASH_LENGTH = 64

_HEX = re.compile(r"^[a-fA-F0-9]+$")
_BECH32 = re.compile(r"^[a-z0-9_]+$")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def check_asset_unit(asset_unit: str) -> ValidationResult:
    """``lovelace`` or a hex policy id (56 chars) followed by an optional asset name."""
    result = ValidationResult()
    if not asset_unit or not isinstance(asset_unit, str):
        result.errors.append("Asset unit is required")
        return result
    if asset_unit == LOVELACE:
        return result

    if len(asset_unit) < POLICY_ID_LENGTH:
        result.errors.append(
            f"Asset unit must be at least {POLICY_ID_LENGTH} characters (policy ID length)"
        )
    if not _HEX.match(asset_unit):
        result.errors.append("Asset unit must contain only hexadecimal characters")
    return result


def check_address(address: str) -> ValidationResult:
    """Shape check for bech32 payment addresses (mainnet ``addr1``, testnet ``addr_test1``)."""
    result = ValidationResult()
    if not address or not isinstance(address, str):
        result.errors.append("Address is required")
        return result

    if not address.startswith("addr"):
        result.errors.append('Address must be a bech32 payment address starting with "addr"')
    if not 50 <= len(address) <= 120:
        result.errors.append("Address length is invalid")
    if not _BECH32.match(address):
        result.errors.append("Address contains invalid characters")
    return result


def check_policy_id(policy_id: str) -> ValidationResult:
    result = ValidationResult()
    if not policy_id or len(policy_id) != POLICY_ID_LENGTH:
        result.errors.append(f"Policy ID must be exactly {POLICY_ID_LENGTH} characters")
    if policy_id and not _HEX.match(policy_id):
        result.errors.append("Policy ID must contain only hexadecimal characters")
    return result


def check_tx_hash(tx_hash: str) -> ValidationResult:
    result = ValidationResult()
    if not tx_hash or len(tx_hash) != TX_HASH_LENGTH:
        result.errors.append(f"Transaction hash must be exactly {TX_HASH_LENGTH} characters")
    if tx_hash and not _HEX.match(tx_hash):
        result.errors.append("Transaction hash must contain only hexadecimal characters")
    return result


def validate_asset_unit(asset_unit: str) -> None:
    """
    Raises:
        ValidationError: If the asset unit is malformed
    """
    result = check_asset_unit(asset_unit)
    if not result.valid:
        raise ValidationError(
            f"Invalid asset unit: {', '.join(result.errors)}",
            field="asset_unit",
            value=asset_unit,
            context={"errors": result.errors},
        )


def validate_address(address: str) -> None:
    """
    Raises:
        ValidationError: If the address is malformed
    """
    result = check_address(address)
    if not result.valid:
        raise ValidationError(
            f"Invalid Cardano address: {', '.join(result.errors)}",
            field="address",
            value=address,
            context={"errors": result.errors},
        )


def validate_fields(fields: list[str], allowed: tuple[str, ...]) -> None:
    """
    Raises:
        ValidationError: If ``fields`` is empty or names an unknown field
    """
    if not fields:
        raise ValidationError("At least one field is required", field="fields")
    unknown = [f for f in fields if f not in allowed]
    if unknown:
        raise ValidationError(
            f"Unknown fields: {', '.join(unknown)}", field="fields", value=unknown
        )
