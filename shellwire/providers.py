import re
from dataclasses import dataclass
from typing import Dict, List

from shellwire.config import QUICK_TIMEOUT, READ_TIMEOUT
from shellwire.errors import AuthenticationError, OperationError, UnknownCapabilityError
from shellwire.executor import CommandResult
from shellwire.session import Session
from shellwire.utils import shell_quote

_UNIT = re.compile(r"^[A-Za-z0-9@._-]+$")
_CONFIG_GLOB = re.compile(r"^[A-Za-z0-9_./*-]+$")
_VERSION = re.compile(r"\d+(?:\.\d+)+")


@dataclass(frozen=True)
class ServiceStatus:
    unit: str
    active: bool
    state: str

    def to_dict(self):
        return {"unit": self.unit, "active": self.active, "state": self.state}


class ServiceProvider:
    """What a managed service can report about itself on a host."""

    key = ""

    def get_status(self, session: Session) -> ServiceStatus:
        raise NotImplementedError

    def get_version(self, session: Session) -> str:
        raise NotImplementedError

    def get_config(self, session: Session) -> str:
        raise NotImplementedError


def _checked(operation: str, target: str, result: CommandResult) -> CommandResult:
    if result.auth_failed:
        raise AuthenticationError(f"{operation}: {result.auth_error}", command=operation)
    if result.timed_out:
        raise OperationError(operation, [target], "timed out", timed_out=True)
    return result


class SystemdServiceProvider(ServiceProvider):
    def __init__(self, key: str, unit: str, version_command: str, config_path: str):
        if not _UNIT.match(unit):
            raise ValueError(f"invalid unit name: {unit!r}")
        if not _CONFIG_GLOB.match(config_path):
            raise ValueError(f"invalid config path: {config_path!r}")
        self.key = key
        self.unit = unit
        self.version_command = version_command
        self.config_path = config_path

    def get_status(self, session: Session) -> ServiceStatus:
        result = _checked("status", self.unit, session.execute(
            f"systemctl is-active {shell_quote(self.unit)} 2>/dev/null", timeout=QUICK_TIMEOUT, quick=True,
        ))
        lines = [l.strip() for l in result.output.split("\n") if l.strip()]
        state = lines[-1] if lines else "unknown"
        return ServiceStatus(unit=self.unit, active=state == "active", state=state)

    def get_version(self, session: Session) -> str:
        result = _checked("version", self.unit, session.execute(
            f"{{ {self.version_command}; }} 2>&1", timeout=QUICK_TIMEOUT, quick=True,
        ))
        match = _VERSION.search(result.output)
        if result.exit_code != 0 or not match:
            raise OperationError("version", [self.unit], result.output.strip() or "version not reported",
                                 exit_code=result.exit_code)
        return match.group(0)

    def get_config(self, session: Session) -> str:
        # config_path may be a glob such as /etc/postgresql/*/main/postgresql.conf
        result = _checked("config", self.config_path, session.execute(
            f"cat -- {self.config_path}", timeout=READ_TIMEOUT,
        ))
        if result.exit_code != 0:
            raise OperationError("config", [self.config_path], result.output.strip() or "unreadable",
                                 exit_code=result.exit_code)
        return result.output

    def __repr__(self) -> str:
        return f"SystemdServiceProvider({self.key!r}, unit={self.unit!r})"


class ProviderRegistry:
    """Capability key to provider, filled once at startup."""

    def __init__(self):
        self._providers: Dict[str, ServiceProvider] = {}

    def register(self, key: str, provider: ServiceProvider, replace: bool = False) -> None:
        if key in self._providers and not replace:
            raise ValueError(f"capability already registered: {key}")
        self._providers[key] = provider

    def resolve(self, key: str) -> ServiceProvider:
        try:
            return self._providers[key]
        except KeyError:
            raise UnknownCapabilityError(f"unknown capability: {key}") from None

    def keys(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, key: str) -> bool:
        return key in self._providers


DEFAULT_SERVICES = (
    ("nginx", "nginx", "nginx -v", "/etc/nginx/nginx.conf"),
    ("apache", "apache2", "apache2 -v 2>/dev/null || httpd -v", "/etc/apache2/apache2.conf"),
    ("mysql", "mysql", "mysql --version", "/etc/mysql/my.cnf"),
    ("postgresql", "postgresql", "psql --version", "/etc/postgresql/*/main/postgresql.conf"),
    ("redis", "redis-server", "redis-server --version", "/etc/redis/redis.conf"),
    ("php-fpm", "php-fpm", "php-fpm -v 2>/dev/null || php -v", "/etc/php-fpm.conf"),
)


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    for key, unit, version_command, config_path in DEFAULT_SERVICES:
        registry.register(key, SystemdServiceProvider(key, unit, version_command, config_path))
    return registry
