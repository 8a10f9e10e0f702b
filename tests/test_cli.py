"""
Tests for the ``python -m kbcrawler`` command line.
"""

import json

from kbcrawler.__main__ import main
from kbcrawler.auth.vault import CredentialVault, generate_master_key


class TestCli:

    def test_classify(self, capsys):
        assert main(["classify", "https://launchpad.support.sap.com/#/notes/1"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["regime"] == "external_credential"
        assert out["host"] == "launchpad.support.sap.com"

    def test_classify_invalid_url(self):
        assert main(["classify", "not a url"]) == 1

    def test_gen_key(self, capsys):
        assert main(["gen-key"]) == 0
        key = capsys.readouterr().out.strip()
        CredentialVault(key)

    def test_add_credential(self, tmp_path, monkeypatch, capsys):
        key = generate_master_key()
        state = tmp_path / "vault.json"
        monkeypatch.setenv("KB_CREDENTIAL_MASTER_KEY", key)

        rc = main([
            "--vault-state", str(state),
            "add-credential", "--tenant", "acme", "--domain", "www.support.sap.com",
            "--auth-type", "form", "--username", "me", "--password", "pw",
        ])
        assert rc == 0
        assert json.loads(capsys.readouterr().out)["domain_key"] == "support.sap.com"

        _, payload = CredentialVault(key, state_path=str(state)).resolve("acme", "me.support.sap.com")
        assert payload == {"username": "me", "password": "pw"}

    def test_add_credential_without_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("KB_CREDENTIAL_MASTER_KEY", raising=False)
        rc = main([
            "--vault-state", str(tmp_path / "v.json"),
            "add-credential", "--tenant", "acme", "--domain", "x.example.org", "--auth-type", "basic",
        ])
        assert rc == 1
