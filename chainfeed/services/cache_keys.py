"""
Deterministic cache keys.

Layout:
    v1:token:<id>[:provider:<p>][:fields:<hash>]
    v1:wallet:<id>[:provider:<p>][:fields:<hash>]
    v1:aggregated:<kind>:<id>[:providers:<hash>][:fields:<hash>]
    v1:provider:<p>:<endpoint>[:params:<hash>]
    v1:health:<p>

Field and provider sets are sorted and hashed so permutations share a key.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class CacheKeyMetadata:
    """Structure recovered from a key. Hashed sets are reported by presence only."""

    type: str
    identifier: str
    kind: str | None = None
    provider: str | None = None
    has_fields: bool = False
    has_providers: bool = False


class CacheKeyBuilder:
    """Builds and parses versioned cache keys."""

    separator = ":"
    version = "v1"

    def build_token_data_key(
        self,
        asset_unit: str,
        fields: Iterable[str] | None = None,
        provider: str | None = None,
    ) -> str:
        return self._build_record_key("token", asset_unit, fields, provider)

    def build_wallet_data_key(
        self,
        address: str,
        fields: Iterable[str] | None = None,
        provider: str | None = None,
    ) -> str:
        return self._build_record_key("wallet", address, fields, provider)

    def build_aggregated_key(
        self,
        kind: str,
        identifier: str,
        fields: Iterable[str] | None = None,
        providers: Iterable[str] | None = None,
    ) -> str:
        parts = [self.version, "aggregated", kind, self._sanitize(identifier)]

        providers = sorted(providers or [])
        if providers:
            parts += ["providers", self._hash_list(providers)]

        fields = sorted(fields or [])
        if fields:
            parts += ["fields", self._hash_list(fields)]

        return self.separator.join(parts)

    def build_provider_key(
        self,
        provider: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Key for a raw upstream response."""
        parts = [
            self.version,
            "provider",
            self._sanitize(provider),
            self._sanitize(endpoint),
        ]
        if params:
            parts += ["params", self._hash_object(params)]
        return self.separator.join(parts)

    def build_health_check_key(self, provider: str) -> str:
        return self.separator.join([self.version, "health", self._sanitize(provider)])

    def build_pattern(self, kind: str, identifier: str | None = None) -> str:
        """Glob-style prefix matching every key of a kind (and identifier)."""
        parts = [self.version, kind]
        if identifier:
            parts.append(self._sanitize(identifier))
        return self.separator.join(parts) + "*"

    def parse_key(self, key: str) -> CacheKeyMetadata | None:
        """Recover key structure, or None for foreign or malformed keys."""
        parts = key.split(self.separator)
        if len(parts) < 3 or parts[0] != self.version:
            return None

        if parts[1] == "aggregated":
            if len(parts) < 4:
                return None
            meta = CacheKeyMetadata(type="aggregated", identifier=parts[3], kind=parts[2])
            rest = parts[4:]
        else:
            meta = CacheKeyMetadata(type=parts[1], identifier=parts[2])
            rest = parts[3:]

        for name, value in zip(rest[::2], rest[1::2]):
            if not value:
                continue
            if name == "provider":
                meta.provider = value
            elif name == "providers":
                meta.has_providers = True
            elif name == "fields":
                meta.has_fields = True

        return meta

    def _build_record_key(
        self,
        kind: str,
        identifier: str,
        fields: Iterable[str] | None,
        provider: str | None,
    ) -> str:
        parts = [self.version, kind, self._sanitize(identifier)]

        if provider:
            parts += ["provider", self._sanitize(provider)]

        fields = sorted(fields or [])
        if fields:
            parts += ["fields", self._hash_list(fields)]

        return self.separator.join(parts)

    @staticmethod
    def _sanitize(identifier: str) -> str:
        return _UNSAFE.sub("_", identifier).lower()

    @staticmethod
    def _hash_list(values: list[str]) -> str:
        return hashlib.md5(",".join(values).encode()).hexdigest()[:8]

    @staticmethod
    def _hash_object(obj: dict[str, Any]) -> str:
        payload = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.md5(payload.encode()).hexdigest()[:8]
