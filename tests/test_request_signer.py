import pytest

from app.providers.open_payments import signing
from settings import settings


def build_test_signer(*, key_id: str, private_key_path: str):
    def _sign(method, url, headers, body):
        return {"Signature-Input": f'sig1=();keyid="{key_id}"', "Signature": "sig1=:c2ln:"}

    return _sign


def test_load_signer_resolves_factory():
    signer = signing.load_signer(f"{__name__}:build_test_signer", key_id="key-1", private_key_path="/keys/k.pem")
    headers = signer("POST", "https://auth.example", {}, b"{}")
    assert 'keyid="key-1"' in headers["Signature-Input"]


def test_load_signer_rejects_malformed_path():
    with pytest.raises(RuntimeError):
        signing.load_signer("no_colon_here", key_id="k", private_key_path="p")


def test_signer_from_settings_unset_returns_none(monkeypatch, caplog):
    monkeypatch.setattr(settings, "OP_REQUEST_SIGNER", "", raising=False)
    assert signing.signer_from_settings() is None
    assert "OP_REQUEST_SIGNER not configured" in caplog.text


def test_signer_from_settings_passes_key_material(monkeypatch):
    monkeypatch.setattr(settings, "OP_REQUEST_SIGNER", f"{__name__}:build_test_signer", raising=False)
    monkeypatch.setattr(settings, "OP_KEY_ID", "key-9", raising=False)
    signer = signing.signer_from_settings()
    assert 'keyid="key-9"' in signer("GET", "https://x", {}, None)["Signature-Input"]
