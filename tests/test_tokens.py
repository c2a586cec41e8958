import base64

from conftest import make_token
from sendto.utils.tokens import is_token_valid, token_expiry


def test_token_expiry_reads_exp():
    assert token_expiry(make_token(1_700_003_600, sub="user")) == 1_700_003_600


def test_token_expiry_accepts_padded_standard_base64():
    payload = base64.b64encode(b'{"exp": 42, "note": "??>"}').decode()
    assert token_expiry(f"x.{payload}.y") == 42


def test_malformed_tokens_have_no_expiry():
    assert token_expiry("") is None
    assert token_expiry("no-dots-here") is None
    assert token_expiry("a.!!!not-base64!!!.c") is None
    assert token_expiry("a." + base64.urlsafe_b64encode(b"not json").decode() + ".c") is None
    assert token_expiry("a." + base64.urlsafe_b64encode(b'{"sub": "x"}').decode() + ".c") is None
    assert token_expiry("a." + base64.urlsafe_b64encode(b'{"exp": "soon"}').decode() + ".c") is None
    assert token_expiry("a." + base64.urlsafe_b64encode(b"[1, 2]").decode() + ".c") is None


def test_validity_is_strict():
    token = make_token(1000)
    assert is_token_valid(token, now=999)
    assert not is_token_valid(token, now=1000)
    assert not is_token_valid(token, now=1001)


def test_leeway_shortens_validity():
    token = make_token(1000)
    assert is_token_valid(token, now=969, leeway=30)
    assert not is_token_valid(token, now=970, leeway=30)


def test_missing_or_garbage_token_is_invalid():
    assert not is_token_valid(None, now=0)
    assert not is_token_valid("garbage", now=0)


def test_non_finite_exp_is_invalid():
    for raw in (b'{"exp": 1e400}', b'{"exp": -1e400}', b'{"exp": NaN}', b'{"exp": Infinity}'):
        token = "a." + base64.urlsafe_b64encode(raw).decode() + ".c"
        assert token_expiry(token) is None
        assert not is_token_valid(token, now=0)


def test_huge_integer_exp_still_parses():
    token = "a." + base64.urlsafe_b64encode(b'{"exp": 1' + b"0" * 400 + b'}').decode() + ".c"
    assert is_token_valid(token, now=0)
