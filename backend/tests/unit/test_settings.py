from clstr.settings import Settings, _split_names


def test_split_names_formats():
    assert _split_names(None) == ()
    assert _split_names("") == ()
    assert _split_names("Alumni, Organization,") == ("Alumni", "Organization")
    assert _split_names('["Alumni", " Faculty "]') == ("Alumni", "Faculty")
    assert _split_names(["Alumni", ""]) == ("Alumni",)


def test_privileged_roles_from_env(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "x" * 32)
    monkeypatch.setenv("PRIVILEGED_MESSAGING_ROLES", "Alumni,Faculty")
    monkeypatch.setenv("HISTORY_MAX_LIMIT", "25")

    configured = Settings(_env_file=None)

    assert configured.privileged_messaging_roles == ("Alumni", "Faculty")
    assert configured.history_max_limit == 25


def test_defaults(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "x" * 32)
    monkeypatch.delenv("PRIVILEGED_MESSAGING_ROLES", raising=False)
    configured = Settings(_env_file=None)
    assert configured.privileged_messaging_roles == ("Alumni", "Organization")
    assert configured.message_max_length == 4000
    assert configured.presence_online_seconds == 300
