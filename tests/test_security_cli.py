import importlib.util
from pathlib import Path

import pytest

from bureauguard.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "security.py"


@pytest.fixture(scope="module")
def security():
    spec = importlib.util.spec_from_file_location("security_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_create_user(security, capsys):
    assert security.main(["create-user", "--email", "Ops@Example.com", "--password", "pw-1"]) == 0
    assert "Created user ops@example.com" in capsys.readouterr().out
    assert get_runtime().credentials.get_by_email("ops@example.com") is not None


def test_issue_and_revoke_cli_token(security, capsys):
    assert security.main(["issue-cli-token", "--user-id", "svc-1"]) == 0
    lines = capsys.readouterr().out.splitlines()
    jti = lines[0].split(": ", 1)[1]
    token = lines[1]
    tokens = get_runtime().tokens
    claims = tokens.verify(token)
    assert claims.jti == jti
    assert claims.expires_at is None

    assert security.main(["revoke-token", "--jti", jti]) == 0
    assert "Revoked" in capsys.readouterr().out
    assert security.main(["revoke-token", "--token", token]) == 0
    assert "not whitelisted" in capsys.readouterr().out


def test_ratelimit_cleanup(security, capsys):
    assert security.main(["ratelimit-cleanup"]) == 0
    assert "Removed 0 expired rate limit rows" in capsys.readouterr().out


def test_errors_are_reported(security, capsys):
    assert security.main(["create-user", "--email", "not-an-email", "--password", "pw"]) == 1
    assert capsys.readouterr().err.startswith("Error:")


def test_revoke_requires_a_target(security):
    with pytest.raises(SystemExit):
        security.main(["revoke-token"])
