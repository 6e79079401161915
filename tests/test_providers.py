import pytest

from shellwire.errors import OperationError, UnknownCapabilityError
from shellwire.providers import ProviderRegistry, SystemdServiceProvider, default_registry

from conftest import FakeShell, Reply


def test_default_registry_knows_the_common_services():
    registry = default_registry()
    assert registry.keys() == ["apache", "mysql", "nginx", "php-fpm", "postgresql", "redis"]
    assert "nginx" in registry
    assert registry.resolve("redis").unit == "redis-server"


def test_unknown_capability():
    registry = default_registry()
    with pytest.raises(UnknownCapabilityError):
        registry.resolve("mongodb")
    with pytest.raises(KeyError):
        registry.resolve("mongodb")


def test_duplicate_registration_is_refused():
    registry = ProviderRegistry()
    nginx = SystemdServiceProvider("nginx", "nginx", "nginx -v", "/etc/nginx/nginx.conf")
    registry.register("nginx", nginx)
    with pytest.raises(ValueError):
        registry.register("nginx", nginx)
    registry.register("nginx", nginx, replace=True)
    assert registry.keys() == ["nginx"]


def test_unit_names_are_validated():
    with pytest.raises(ValueError):
        SystemdServiceProvider("x", "nginx; reboot", "nginx -v", "/etc/nginx/nginx.conf")


@pytest.fixture
def nginx():
    return default_registry().resolve("nginx")


def test_status(make_session, nginx):
    shell = FakeShell().on(r"is-active 'nginx'", Reply("active\n"))
    status = nginx.get_status(make_session(shell))
    assert status.active
    assert status.to_dict() == {"unit": "nginx", "active": True, "state": "active"}


def test_inactive_status_is_not_an_error(make_session, nginx):
    shell = FakeShell().on(r"is-active", Reply("inactive\n", 3))
    status = nginx.get_status(make_session(shell))
    assert not status.active
    assert status.state == "inactive"


def test_version_reads_stderr(make_session, nginx):
    shell = FakeShell().on(r"nginx -v", Reply("nginx version: nginx/1.24.0 (Ubuntu)\n"))
    assert nginx.get_version(make_session(shell)) == "1.24.0"
    assert shell.commands[-1] == "{ nginx -v; } 2>&1"


def test_missing_binary_has_no_version(make_session, nginx):
    shell = FakeShell().on(r"nginx -v", Reply("sh: nginx: not found\n", 127))
    with pytest.raises(OperationError) as info:
        nginx.get_version(make_session(shell))
    assert info.value.exit_code == 127


def test_config_globs_are_left_unquoted(make_session):
    postgres = default_registry().resolve("postgresql")
    shell = FakeShell().on(r"^cat -- ", Reply("listen_addresses = '*'\n"))
    assert postgres.get_config(make_session(shell)) == "listen_addresses = '*'"
    assert shell.commands[-1] == "cat -- /etc/postgresql/*/main/postgresql.conf"
