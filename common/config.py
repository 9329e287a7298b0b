"""
Runtime configuration for chattr.

Defaults can be overridden by CHATTR_* environment variables, and those in
turn by command line flags (passed to load_config as keyword overrides).
"""
import os
import pwd
import tempfile
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

from common.errors import ConfigError

DEFAULT_PORT = 12345
LIVE_PORT = 12346   # port for the /live command
CHUNK = 4096        # raw bytes per FILE_DATA line, before Base64
LIVE_TIMEOUT = 60   # seconds the acceptor waits for the requester to join a live session


def local_home(environ: Mapping[str, str] = os.environ) -> str:
    '''
    The function returns this machine's home directory for path shortcuts.
    When running as root through sudo, the invoking user's home is used.
    '''
    sudo_user = environ.get("SUDO_USER")
    if os.geteuid() == 0 and sudo_user:
        try:
            return pwd.getpwnam(sudo_user).pw_dir
        except KeyError:
            pass
    return environ.get("HOME") or os.path.expanduser("~")


@dataclass
class ChatConfig:
    port: int = DEFAULT_PORT
    live_port: int = LIVE_PORT
    live_bind: str = "0.0.0.0"
    live_timeout: int = LIVE_TIMEOUT
    chunk_size: int = CHUNK
    shell: str = "/bin/bash"
    cert_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "chattr_certs"))
    home: str = field(default_factory=local_home)
    log_file: Optional[str] = None
    verbose: int = 1


# config field -> environment variable
ENV_VARS = {
    "port": "CHATTR_PORT",
    "live_port": "CHATTR_LIVE_PORT",
    "live_bind": "CHATTR_LIVE_BIND",
    "live_timeout": "CHATTR_LIVE_TIMEOUT",
    "chunk_size": "CHATTR_CHUNK_SIZE",
    "shell": "CHATTR_SHELL",
    "cert_dir": "CHATTR_CERT_DIR",
    "log_file": "CHATTR_LOG",
    "verbose": "CHATTR_VERBOSE",
}

_INT_FIELDS = {f.name for f in fields(ChatConfig) if f.type in (int, "int")}


def _coerce(name: str, value):
    if name in _INT_FIELDS and not isinstance(value, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    return value


def load_config(environ: Mapping[str, str] = os.environ, **overrides) -> ChatConfig:
    '''
    Build a ChatConfig from defaults, the environment, then explicit overrides.
    Overrides whose value is None are ignored so argparse results can be passed
    straight through.
    '''
    values = {}
    for name, var in ENV_VARS.items():
        if environ.get(var):
            values[name] = _coerce(name, environ[var])
    for name, value in overrides.items():
        if name not in ChatConfig.__dataclass_fields__:
            raise ConfigError(f"unknown config option: {name}")
        if value is not None:
            values[name] = _coerce(name, value)

    config = ChatConfig(**values)
    if config.chunk_size <= 0:
        raise ConfigError("chunk_size must be positive")
    if config.live_timeout <= 0:
        raise ConfigError("live_timeout must be positive")
    for name in ("port", "live_port"):
        if not 0 <= getattr(config, name) <= 65535:
            raise ConfigError(f"{name} out of range: {getattr(config, name)}")
    return config
