from checkout_service.signature import SignatureVerifier, parse_signature_header

from conftest import WEBHOOK_SECRET, sign, sign_body


def test_parse_signature_header():
    assert parse_signature_header("ts=1700000000,v1=abc123") == ("1700000000", "abc123")
    assert parse_signature_header(" v1=abc , ts=17 ") == ("17", "abc")
    assert parse_signature_header("garbage") == (None, None)
    assert parse_signature_header(None) == (None, None)


def test_manifest_signature_accepted():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456")
    assert verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456")


def test_body_signature_accepted():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    body = b'{"data": {"id": "123456"}}'
    headers = sign_body(body)
    assert verifier.verify(body, headers["x-signature"], headers["x-request-id"], "123456")


def test_no_secret_rejects_valid_signature():
    headers = sign("123456")
    for secret in (None, ""):
        verifier = SignatureVerifier(secret)
        assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456")


def test_tampered_body_rejected_when_body_signed():
    verifier = SignatureVerifier(WEBHOOK_SECRET, schemes=("body",))
    body = b'{"data": {"id": "123456"}, "action": "payment.created"}'
    headers = sign_body(body)
    tampered = b'{"data": {"id": "123456"}, "action": "payment.updated"}'
    assert not verifier.verify(tampered, headers["x-signature"], headers["x-request-id"], "123456")


def test_other_payment_id_rejected():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456")
    assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "999999")


def test_wrong_secret_rejected():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456", secret="someone-else")
    assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456")


def test_prefix_of_mac_rejected():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456")
    truncated = headers["x-signature"][:-8]
    assert not verifier.verify(b"{}", truncated, headers["x-request-id"], "123456")


def test_missing_parts_rejected():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456")
    assert not verifier.verify(b"{}", None, headers["x-request-id"], "123456")
    assert not verifier.verify(b"{}", headers["x-signature"], None, "123456")
    assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], None)
    assert not verifier.verify(b"{}", "ts=1700000000", headers["x-request-id"], "123456")
    assert not verifier.verify(b"{}", "ts=1700000000,v1=not-hex", headers["x-request-id"], "123456")


def test_mismatched_timestamp_rejected():
    verifier = SignatureVerifier(WEBHOOK_SECRET)
    headers = sign("123456", ts="1700000000")
    assert verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456", timestamp="1700000000")
    assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456", timestamp="1700000999")


def test_disabled_scheme_not_accepted():
    verifier = SignatureVerifier(WEBHOOK_SECRET, schemes=("body",))
    headers = sign("123456")
    assert not verifier.verify(b"{}", headers["x-signature"], headers["x-request-id"], "123456")
