"""
Tests for CacheKeyBuilder.
"""

import pytest

from chainfeed.services.cache_keys import CacheKeyBuilder

POLICY_UNIT = "f43a62fdc3965df486de8a0d32fe800963589c41b38946602a0dc535" + "41474958"


@pytest.fixture
def keys():
    return CacheKeyBuilder()


class TestRecordKeys:
    def test_plain_token_key(self, keys):
        assert keys.build_token_data_key("lovelace") == "v1:token:lovelace"

    def test_field_order_does_not_matter(self, keys):
        a = keys.build_token_data_key("lovelace", ["price", "name", "symbol"])
        b = keys.build_token_data_key("lovelace", ["symbol", "price", "name"])
        assert a == b

    def test_field_set_changes_key(self, keys):
        a = keys.build_token_data_key("lovelace", ["price"])
        b = keys.build_token_data_key("lovelace", ["price", "name"])
        assert a != b

    def test_fields_are_hashed_to_eight_hex_chars(self, keys):
        key = keys.build_token_data_key("lovelace", ["price", "name"])
        prefix, digest = key.rsplit(":", 1)

        assert prefix == "v1:token:lovelace:fields"
        assert len(digest) == 8
        int(digest, 16)

    def test_provider_segment(self, keys):
        key = keys.build_token_data_key("lovelace", provider="CoinGecko")
        assert key == "v1:token:lovelace:provider:coingecko"

    def test_identifier_is_sanitized(self, keys):
        key = keys.build_wallet_data_key("Addr1 Q/X")
        assert key == "v1:wallet:addr1_q_x"

    def test_builds_are_idempotent(self, keys):
        assert keys.build_token_data_key(POLICY_UNIT, ["price"]) == keys.build_token_data_key(
            POLICY_UNIT, ["price"]
        )


class TestAggregatedKeys:
    def test_provider_order_does_not_matter(self, keys):
        a = keys.build_aggregated_key("token", "lovelace", ["price"], ["b", "a"])
        b = keys.build_aggregated_key("token", "lovelace", ["price"], ["a", "b"])
        assert a == b

    def test_layout(self, keys):
        key = keys.build_aggregated_key("token", "lovelace", ["price"], ["coingecko"])
        parts = key.split(":")

        assert parts[:4] == ["v1", "aggregated", "token", "lovelace"]
        assert parts[4] == "providers"
        assert parts[6] == "fields"


class TestParseKey:
    def test_parse_token_key(self, keys):
        meta = keys.parse_key(keys.build_token_data_key("lovelace", ["price"], "coingecko"))

        assert meta.type == "token"
        assert meta.identifier == "lovelace"
        assert meta.provider == "coingecko"
        assert meta.has_fields is True
        assert meta.has_providers is False

    def test_parse_aggregated_key(self, keys):
        meta = keys.parse_key(
            keys.build_aggregated_key("wallet", "addr1xyz", providers=["blockfrost"])
        )

        assert meta.type == "aggregated"
        assert meta.kind == "wallet"
        assert meta.identifier == "addr1xyz"
        assert meta.has_providers is True
        assert meta.has_fields is False

    @pytest.mark.parametrize("key", ["", "v2:token:x", "v1:token", "other"])
    def test_foreign_keys_are_rejected(self, keys, key):
        assert keys.parse_key(key) is None


class TestAuxiliaryKeys:
    def test_provider_key_params_are_order_independent(self, keys):
        a = keys.build_provider_key("coingecko", "/coins/cardano", {"a": "1", "b": "2"})
        b = keys.build_provider_key("coingecko", "/coins/cardano", {"b": "2", "a": "1"})
        assert a == b
        assert a.startswith("v1:provider:coingecko:_coins_cardano:params:")

    def test_health_key(self, keys):
        assert keys.build_health_check_key("Blockfrost") == "v1:health:blockfrost"

    def test_pattern(self, keys):
        assert keys.build_pattern("token", "lovelace") == "v1:token:lovelace*"
        assert keys.build_pattern("wallet") == "v1:wallet*"
