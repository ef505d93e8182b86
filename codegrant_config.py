"""
codegrant_config.py — process configuration.

Settings come from CODEGRANT_* environment variables. Pre-registered
clients are seeded from a YAML file (clients.yaml beside this module by
default, see clients.example.yaml). Everything is loaded once at startup;
bad configuration exits with a readable message instead of starting a
half-configured server.
"""

import os
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import AnyHttpUrl, BaseModel, Field, ValidationError

DEFAULT_CLIENTS_FILE = Path(__file__).parent / "clients.yaml"


class SeedClient(BaseModel):
    client_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    website: str = ""
    logo: str = ""


class Settings(BaseModel):
    signing_key: str = Field(min_length=1)
    issuer_url: AnyHttpUrl = Field(default="http://localhost:3000", validate_default=True)
    code_ttl: int = Field(default=300, gt=0)
    token_ttl: int = Field(default=24 * 3600, gt=0)
    sweep_interval: float = Field(default=60, gt=0)
    max_pending_codes: int = Field(default=10000, gt=0)
    registration_secret: str | None = None
    require_consent_reference: bool = False
    clients: list[SeedClient] = Field(default_factory=list)

    @property
    def issuer(self) -> str:
        return str(self.issuer_url).rstrip("/")


_ENV_FIELDS = {
    "CODEGRANT_SIGNING_KEY": "signing_key",
    "CODEGRANT_ISSUER_URL": "issuer_url",
    "CODEGRANT_CODE_TTL": "code_ttl",
    "CODEGRANT_TOKEN_TTL": "token_ttl",
    "CODEGRANT_SWEEP_INTERVAL": "sweep_interval",
    "CODEGRANT_MAX_PENDING_CODES": "max_pending_codes",
    "CODEGRANT_REGISTRATION_SECRET": "registration_secret",
    "CODEGRANT_REQUIRE_CONSENT_REFERENCE": "require_consent_reference",
}


def load_clients(config_path: Path) -> list[SeedClient]:
    """Load seed clients from a YAML file with a top-level 'clients' mapping."""
    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("clients"), dict):
        raise SystemExit(f"Invalid clients file: expected top-level 'clients' mapping in {config_path}")

    clients: list[SeedClient] = []
    for client_id, cfg in raw["clients"].items():
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: expected a mapping")
        try:
            clients.append(SeedClient(client_id=str(client_id), **cfg))
        except (ValidationError, TypeError) as e:
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: {e}")
    return clients


def load_settings(
    environ: Mapping[str, str] | None = None,
    clients_file: Path | None = None,
) -> Settings:
    if environ is None:
        environ = os.environ

    values: dict[str, object] = {}
    for var, name in _ENV_FIELDS.items():
        value = environ.get(var)
        if value not in (None, ""):
            values[name] = value

    if "signing_key" not in values:
        raise SystemExit("CODEGRANT_SIGNING_KEY is not set; refusing to start without a token signing key")

    if clients_file is None:
        env_path = environ.get("CODEGRANT_CLIENTS_FILE")
        if env_path:
            clients_file = Path(env_path)
        elif DEFAULT_CLIENTS_FILE.exists():
            clients_file = DEFAULT_CLIENTS_FILE
    if clients_file is not None:
        if not clients_file.exists():
            raise SystemExit(f"Clients file not found: {clients_file}")
        values["clients"] = load_clients(clients_file)

    try:
        return Settings(**values)
    except ValidationError as e:
        raise SystemExit(f"Invalid configuration:\n{e}")
