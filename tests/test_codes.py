"""Single-use code issuance, PKCE binding and atomic consumption."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from authkernel.config import Settings
from authkernel.service.codes import CodeIssuer, s256_challenge
from authkernel.service.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeNotFoundError,
    InvalidGrantError,
    ValidationError,
)
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import AuthParams, CodeType, LoginSession, utcnow

VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


@pytest.fixture
def issuer():
    settings = Settings(jwt_secret="s" * 40, authorization_code_ttl_seconds=60)
    return CodeIssuer(MemoryStore(), settings)


def test_s256_challenge_matches_rfc7636_example():
    assert s256_challenge(VERIFIER) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGjSstw-cM"


def test_create_assigns_random_id_and_ttl(issuer):
    now = utcnow()
    first = issuer.create("t1", CodeType.AUTHORIZATION_CODE, {"user_id": "u1"}, now=now)
    second = issuer.create("t1", CodeType.AUTHORIZATION_CODE, {"user_id": "u1"}, now=now)
    assert first.code_id != second.code_id
    assert len(first.code_id) >= 40
    assert first.expires_at - now == timedelta(seconds=60)
    assert first.used_at is None


def test_invite_ttl_is_clamped(issuer):
    assert issuer.ttl_for(CodeType.INVITE, 10**9) == issuer.settings.invite_max_ttl_seconds
    assert issuer.ttl_for(CodeType.INVITE, 120) == 120
    assert issuer.ttl_for(CodeType.OTP, 999) == issuer.settings.otp_ttl_seconds


def test_create_rejects_unknown_payload_and_pkce_method(issuer):
    with pytest.raises(ValidationError):
        issuer.create("t1", CodeType.OTP, {"favourite": "x"})
    with pytest.raises(ValidationError):
        issuer.create(
            "t1",
            CodeType.AUTHORIZATION_CODE,
            {"code_challenge": "abc", "code_challenge_method": "S512"},
        )


def test_consume_once_then_already_used(issuer):
    code = issuer.create("t1", CodeType.AUTHORIZATION_CODE, {"user_id": "u1"})
    consumed = issuer.consume("t1", code.code_id, CodeType.AUTHORIZATION_CODE)
    assert consumed.user_id == "u1"
    assert consumed.used_at is not None
    with pytest.raises(CodeAlreadyUsedError):
        issuer.consume("t1", code.code_id, CodeType.AUTHORIZATION_CODE)


def test_consume_expired_unknown_and_wrong_tenant(issuer):
    past = utcnow() - timedelta(seconds=120)
    stale = issuer.create("t1", CodeType.AUTHORIZATION_CODE, now=past)
    with pytest.raises(CodeExpiredError):
        issuer.consume("t1", stale.code_id, CodeType.AUTHORIZATION_CODE)
    with pytest.raises(CodeNotFoundError):
        issuer.consume("t1", "missing", CodeType.AUTHORIZATION_CODE)
    live = issuer.create("t1", CodeType.AUTHORIZATION_CODE)
    with pytest.raises(CodeNotFoundError):
        issuer.consume("t2", live.code_id, CodeType.AUTHORIZATION_CODE)
    # failures are InvalidGrant on the token endpoint
    assert issubclass(CodeExpiredError, InvalidGrantError)


def test_concurrent_consumers_see_one_success(issuer):
    code = issuer.create("t1", CodeType.AUTHORIZATION_CODE)

    def attempt(_):
        try:
            issuer.consume("t1", code.code_id, CodeType.AUTHORIZATION_CODE)
            return "ok"
        except CodeAlreadyUsedError:
            return "used"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(20)))
    assert outcomes.count("ok") == 1
    assert outcomes.count("used") == 19


def test_pkce_s256_and_plain(issuer):
    s256 = issuer.create(
        "t1",
        CodeType.AUTHORIZATION_CODE,
        {"code_challenge": s256_challenge(VERIFIER), "code_challenge_method": "S256"},
    )
    assert issuer.consume(
        "t1", s256.code_id, CodeType.AUTHORIZATION_CODE, code_verifier=VERIFIER, check_pkce=True
    )
    plain = issuer.create(
        "t1",
        CodeType.AUTHORIZATION_CODE,
        {"code_challenge": "plain-verifier-value", "code_challenge_method": "plain"},
    )
    assert issuer.consume(
        "t1",
        plain.code_id,
        CodeType.AUTHORIZATION_CODE,
        code_verifier="plain-verifier-value",
        check_pkce=True,
    )


def test_wrong_verifier_does_not_burn_the_code(issuer):
    code = issuer.create(
        "t1",
        CodeType.AUTHORIZATION_CODE,
        {"code_challenge": s256_challenge(VERIFIER), "code_challenge_method": "S256"},
    )
    with pytest.raises(InvalidGrantError):
        issuer.consume(
            "t1", code.code_id, CodeType.AUTHORIZATION_CODE, code_verifier="wrong", check_pkce=True
        )
    with pytest.raises(InvalidGrantError):
        issuer.consume("t1", code.code_id, CodeType.AUTHORIZATION_CODE, check_pkce=True)
    assert issuer.consume(
        "t1", code.code_id, CodeType.AUTHORIZATION_CODE, code_verifier=VERIFIER, check_pkce=True
    )


def test_challenge_is_copied_from_the_login_session(issuer):
    issuer.store.login_sessions.create(
        "t1",
        LoginSession(
            id="ls1",
            tenant_id="t1",
            client_id="c1",
            auth_params=AuthParams(
                client_id="c1",
                redirect_uri="https://app.example.com/cb",
                code_challenge=s256_challenge(VERIFIER),
                code_challenge_method="S256",
            ),
            expires_at=utcnow() + timedelta(hours=1),
        ),
    )
    code = issuer.create("t1", CodeType.AUTHORIZATION_CODE, {"login_id": "ls1", "user_id": "u1"})
    assert code.code_challenge_method == "S256"
    assert code.redirect_uri == "https://app.example.com/cb"
    with pytest.raises(InvalidGrantError):
        issuer.consume("t1", code.code_id, CodeType.AUTHORIZATION_CODE, check_pkce=True)
