import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import pytest

from core.config import Settings
from core.errors import MalformedIdentity
from core.security import (
    InitDataConfig,
    check_init_data,
    extract_telegram_user,
    sign_init_data,
    verify_ipn_signature,
)

BOT_TOKEN = "123456:primary-test-token"
NOW = datetime(2026, 3, 1, 12, 0, 0)


def _auth_date(moment: datetime) -> str:
    return str(int(moment.replace(tzinfo=timezone.utc).timestamp()))


def _build_init_data(token: str, payload: dict) -> str:
    full_payload = {**payload, "hash": sign_init_data(payload, token)}
    return urlencode(full_payload)


def _payload(**overrides) -> dict:
    payload = {
        "auth_date": _auth_date(NOW - timedelta(minutes=5)),
        "query_id": "q1",
        "user": json.dumps({"id": 42, "first_name": "Bob"}),
    }
    payload.update(overrides)
    return payload


def test_signature_matches_manual_hmac():
    payload = _payload()
    data_check_string = "\n".join(f"{key}={payload[key]}" for key in sorted(payload))
    secret_key = hmac.new(b"WebAppData", BOT_TOKEN.encode(), hashlib.sha256).digest()
    expected = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()

    assert sign_init_data(payload, BOT_TOKEN) == expected
    assert sign_init_data(payload, BOT_TOKEN) == sign_init_data(dict(reversed(payload.items())), BOT_TOKEN)


def test_check_init_data_accepts_valid_payload():
    config = InitDataConfig(bot_token=BOT_TOKEN)
    init_data = _build_init_data(BOT_TOKEN, _payload())

    assert check_init_data(init_data, config, now=NOW) is True
    # повторная проверка даёт тот же ответ
    assert check_init_data(init_data, config, now=NOW) is True


@pytest.mark.parametrize("field,value", [("query_id", "q2"), ("user", json.dumps({"id": 43}))])
def test_check_init_data_rejects_tampered_field(field, value):
    config = InitDataConfig(bot_token=BOT_TOKEN)
    payload = _payload()
    signed = {**payload, "hash": sign_init_data(payload, BOT_TOKEN)}
    signed[field] = value

    assert check_init_data(urlencode(signed), config, now=NOW) is False


def test_check_init_data_rejects_wrong_token():
    config = InitDataConfig(bot_token=BOT_TOKEN)
    init_data = _build_init_data("654321:other-token", _payload())

    assert check_init_data(init_data, config, now=NOW) is False


@pytest.mark.parametrize(
    "init_data",
    [
        None,
        "",
        "garbage",
        "auth_date=1&user=%7B%7D",
        "hash=&auth_date=1",
        "a=1&&&b",
        f"auth_date={_auth_date(NOW)}&hash=%C3%A9",
        f"auth_date={_auth_date(NOW)}&user=%7B%7D&hash=%D1%85%D1%8D%D1%88",
    ],
)
def test_check_init_data_never_raises_on_garbage(init_data):
    config = InitDataConfig(bot_token=BOT_TOKEN)
    assert check_init_data(init_data, config, now=NOW) is False


def test_check_init_data_rejects_stale_auth_date():
    config = InitDataConfig(bot_token=BOT_TOKEN, max_age_seconds=3600)
    init_data = _build_init_data(BOT_TOKEN, _payload(auth_date=_auth_date(NOW - timedelta(hours=2))))

    assert check_init_data(init_data, config, now=NOW) is False


def test_check_init_data_rejects_auth_date_far_in_future():
    config = InitDataConfig(bot_token=BOT_TOKEN)
    init_data = _build_init_data(BOT_TOKEN, _payload(auth_date=_auth_date(NOW + timedelta(hours=1))))

    assert check_init_data(init_data, config, now=NOW) is False


def test_check_init_data_rejects_non_numeric_auth_date():
    config = InitDataConfig(bot_token=BOT_TOKEN)
    init_data = _build_init_data(BOT_TOKEN, _payload(auth_date="yesterday"))

    assert check_init_data(init_data, config, now=NOW) is False


def test_check_init_data_accepts_debug_tokens_when_enabled():
    conf = Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        TELEGRAM_BOT_TOKEN="primary-token",
        DEBUG=True,
        DEBUG_TELEGRAM_BOT_TOKENS="extra-one, fallback-token",
    )
    config = InitDataConfig.from_settings(conf)
    init_data = _build_init_data("fallback-token", _payload())

    assert config.extra_bot_tokens == ("extra-one", "fallback-token")
    assert check_init_data(init_data, config, now=NOW) is True


def test_check_init_data_rejects_debug_tokens_when_disabled():
    conf = Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        TELEGRAM_BOT_TOKEN="primary-token",
        DEBUG=False,
        DEBUG_TELEGRAM_BOT_TOKENS="fallback-token",
    )
    config = InitDataConfig.from_settings(conf)
    init_data = _build_init_data("fallback-token", _payload())

    assert config.extra_bot_tokens == ()
    assert check_init_data(init_data, config, now=NOW) is False


@pytest.mark.parametrize(
    "debug,allow,accepted",
    [(True, True, True), (True, False, False), (False, True, False), (False, False, False)],
)
def test_test_hash_bypass_requires_debug_and_explicit_flag(debug, allow, accepted):
    conf = Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        TELEGRAM_BOT_TOKEN="primary-token",
        DEBUG=debug,
        ALLOW_TEST_INIT_DATA=allow,
        TEST_INIT_DATA_HASH="test_hash_for_development",
    )
    config = InitDataConfig.from_settings(conf)
    init_data = urlencode({**_payload(), "hash": "test_hash_for_development"})

    assert check_init_data(init_data, config, now=NOW) is accepted


def test_extract_telegram_user_reads_identity():
    init_data = _build_init_data(
        BOT_TOKEN,
        _payload(user=json.dumps({"id": 9_000_000_000, "first_name": "Big", "username": "big"})),
    )

    tg_user = extract_telegram_user(init_data)

    assert tg_user.id == 9_000_000_000
    assert tg_user.first_name == "Big"
    assert tg_user.username == "big"


@pytest.mark.parametrize(
    "user",
    [
        None,
        "not-json",
        json.dumps({"first_name": "NoId"}),
        json.dumps({"id": "42"}),
        json.dumps({"id": 2 ** 63}),
        json.dumps({"id": 1.5}),
    ],
)
def test_extract_telegram_user_rejects_malformed_identity(user):
    payload = _payload()
    if user is None:
        payload.pop("user")
    else:
        payload["user"] = user

    with pytest.raises(MalformedIdentity) as exc:
        extract_telegram_user(_build_init_data(BOT_TOKEN, payload))

    assert exc.value.status_code == 400


def test_verify_ipn_signature():
    body = {"payment_status": "finished", "order_id": "pay_1", "price_amount": 10}
    message = json.dumps(body, sort_keys=True, separators=(",", ":"))
    signature = hmac.new(b"ipn-secret", message.encode(), hashlib.sha512).hexdigest()

    assert verify_ipn_signature(body, signature, "ipn-secret") is True
    assert verify_ipn_signature(body, signature.upper(), "ipn-secret") is True
    assert verify_ipn_signature(body, signature, "other-secret") is False
    assert verify_ipn_signature({**body, "order_id": "pay_2"}, signature, "ipn-secret") is False
    assert verify_ipn_signature(body, None, "ipn-secret") is False
    assert verify_ipn_signature(body, "\u00e9", "ipn-secret") is False


def test_fresh_payload_with_real_clock():
    config = InitDataConfig(bot_token=BOT_TOKEN)
    init_data = _build_init_data(BOT_TOKEN, _payload(auth_date=str(int(time.time()))))

    assert check_init_data(init_data, config) is True


def test_non_ascii_hash_does_not_break_test_bypass():
    config = InitDataConfig(bot_token=BOT_TOKEN, test_bypass_hash="test_hash_for_development")
    init_data = urlencode({**_payload(), "hash": "тест"})

    assert check_init_data(init_data, config, now=NOW) is False
