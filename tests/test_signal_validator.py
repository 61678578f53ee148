"""Tests for webhook body validation and close detection."""

import pytest

from perpbot.engine.signal_validator import normalize_payload, validate_signal
from perpbot.errors import ValidationError


def _body(**overrides):
    body = {"botId": 7, "action": "buy", "contracts": "33", "symbol": "SOL-PERP"}
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# 1. Opens
# ---------------------------------------------------------------------------

class TestOpenSignals:
    def test_buy_is_long_open(self):
        intent = validate_signal(7, _body())
        assert intent.action == "open"
        assert intent.direction == "long"
        assert intent.size_pct == 33.0
        assert intent.symbol == "SOL-PERP"

    def test_sell_is_short_open(self):
        intent = validate_signal(7, _body(action="sell"))
        assert intent.direction == "short"

    def test_numeric_contracts_accepted(self):
        assert validate_signal(7, _body(contracts=12.5)).size_pct == 12.5

    def test_position_size_field_accepted(self):
        body = _body()
        del body["contracts"]
        body["position_size"] = "40"
        assert validate_signal(7, body).size_pct == 40.0

    def test_keys_are_case_insensitive(self):
        intent = validate_signal(7, {"BOTID": "7", "Action": "BUY", "Contracts": "5", "Symbol": "SOL"})
        assert intent.direction == "long"
        assert intent.size_pct == 5.0

    def test_bot_id_optional_in_body(self):
        body = _body()
        del body["botId"]
        assert validate_signal(7, body).action == "open"


# ---------------------------------------------------------------------------
# 2. Zero sentinel always means close
# ---------------------------------------------------------------------------

class TestCloseDetection:
    @pytest.mark.parametrize("action", ["buy", "sell", "long", "short", "close"])
    @pytest.mark.parametrize("size", ["0", 0, 0.0, "0.0", " 0 "])
    def test_zero_size_closes_whatever_the_action(self, action, size):
        intent = validate_signal(7, _body(action=action, contracts=size))
        assert intent.action == "close"
        assert intent.direction is None
        assert intent.size_pct == 0.0
        assert intent.is_close

    @pytest.mark.parametrize("size", ["0", 0])
    def test_zero_size_closes_unrecognized_action(self, size):
        intent = validate_signal(7, _body(action="reverse", contracts=size))
        assert intent.action == "close"
        assert intent.is_close

    def test_zero_position_size_closes(self):
        body = _body(action="buy")
        del body["contracts"]
        body["position_size"] = 0
        assert validate_signal(7, body).is_close

    def test_zero_in_either_field_wins(self):
        assert validate_signal(7, _body(contracts="10", position_size="0")).is_close

    def test_close_verb_without_size(self):
        body = _body(action="exit")
        del body["contracts"]
        assert validate_signal(7, body).is_close


# ---------------------------------------------------------------------------
# 3. Rejections name the offending field
# ---------------------------------------------------------------------------

class TestRejections:
    def _field(self, body, bot_id=7):
        with pytest.raises(ValidationError) as exc:
            validate_signal(bot_id, body)
        return exc.value.field

    def test_non_object_body(self):
        assert self._field(["buy"]) == "body"

    def test_missing_symbol(self):
        body = _body()
        del body["symbol"]
        assert self._field(body) == "symbol"

    def test_missing_action(self):
        body = _body()
        del body["action"]
        assert self._field(body) == "action"

    def test_unknown_action(self):
        assert self._field(_body(action="hodl")) == "action"

    def test_open_without_size(self):
        body = _body()
        del body["contracts"]
        assert self._field(body) == "contracts"

    @pytest.mark.parametrize("size", ["abc", "", "-5", "nan", "inf", True, [1]])
    def test_bad_numbers(self, size):
        assert self._field(_body(contracts=size)) == "contracts"

    def test_percentage_over_100(self):
        assert self._field(_body(contracts="150")) == "contracts"

    def test_bot_id_mismatch(self):
        assert self._field(_body(botId=8)) == "botId"


# ---------------------------------------------------------------------------
# 4. Normalization and hashing
# ---------------------------------------------------------------------------

class TestNormalization:
    def test_secret_never_stored(self):
        normalized = normalize_payload(_body(secret="hunter2", passphrase="x"))
        assert "secret" not in normalized
        assert "passphrase" not in normalized

    def test_string_and_number_hash_the_same(self):
        a = validate_signal(7, _body(contracts="33"))
        b = validate_signal(7, _body(contracts=33))
        c = validate_signal(7, _body(contracts=33.0))
        assert a.signal_hash == b.signal_hash == c.signal_hash

    def test_secret_does_not_change_hash(self):
        a = validate_signal(7, _body())
        b = validate_signal(7, _body(secret="rotated"))
        assert a.signal_hash == b.signal_hash

    def test_hash_is_bot_scoped(self):
        body = _body()
        del body["botId"]
        assert validate_signal(7, body).signal_hash != validate_signal(8, body).signal_hash

    def test_distinct_alert_time_distinct_hash(self):
        a = validate_signal(7, _body(time="2024-05-01T10:00:00Z"))
        b = validate_signal(7, _body(time="2024-05-01T10:05:00Z"))
        assert a.signal_hash != b.signal_hash
