import os
from dataclasses import dataclass

from qftp.core.errors import ConfigError

DEFAULT_PORT = 21
DEFAULT_PASV_PORT = 20
DEFAULT_TIMEOUT = 10.0


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e


@dataclass
class ClientConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    # Used only when the PASV reply carries no address tuple
    pasv_port: int = DEFAULT_PASV_PORT
    user: str = "anonymous"
    password: str = ""
    base_dir: str = ""
    timeout: float = DEFAULT_TIMEOUT
    pasv_send_address: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """
        Build the configuration from FTP_* environment variables.
        Keyword arguments take precedence over the environment.
        """
        values = {
            "host": os.getenv("FTP_HOST", cls.host),
            "port": _env_number("FTP_PORT", DEFAULT_PORT, int),
            "pasv_port": _env_number("FTP_PASV_PORT", DEFAULT_PASV_PORT, int),
            "user": os.getenv("FTP_USER", cls.user),
            "password": os.getenv("FTP_PASS", cls.password),
            "base_dir": os.getenv("FTP_BASE_DIR", cls.base_dir),
            "timeout": _env_number("FTP_TIMEOUT", DEFAULT_TIMEOUT, float),
        }
        values.update(overrides)
        config = cls(**values)
        config.validate()
        return config

    def validate(self):
        if not self.host:
            raise ConfigError("host is required")
        for name in ("port", "pasv_port"):
            value = getattr(self, name)
            if not 0 < int(value) < 65536:
                raise ConfigError(f"{name} out of range: {value}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive: {self.timeout}")
