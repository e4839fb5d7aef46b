from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-nfe"
VER_PROC = "emissor-nfe_0.1.0"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in
    shell, dev layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("EMISSOR_NFE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/emissor_nfe/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_DATA_DIR", "data", kind="data")


NFE_NS = "http://www.portalfiscal.inf.br/nfe"
WSDL_NS_PREFIX = "http://www.portalfiscal.inf.br/nfe/wsdl/"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
SOAP11_NS = "http://schemas.xmlsoap.org/soap/envelope/"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"

NFE_VERSION = "4.00"
MODELO_NFE = "55"

BRT = timezone(timedelta(hours=-3))

AMBIENTE_NAMES = {"1": "Produção", "2": "Homologação"}

SEFAZ_TIMEOUT = 30
RECEIPT_POLL_DELAY = 3.0

DEFAULT_USER_ID = 1

_TRUTHY = {"1", "true", "yes", "sim", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def get_sefaz_timeout() -> float:
    """Seconds to wait for a SEFAZ response (SEFAZ_TIMEOUT)."""
    return float(os.environ.get("SEFAZ_TIMEOUT", SEFAZ_TIMEOUT))


def get_receipt_poll_delay() -> float:
    """Grace interval before polling a receipt (SEFAZ_RECEIPT_POLL_DELAY)."""
    return float(os.environ.get("SEFAZ_RECEIPT_POLL_DELAY", RECEIPT_POLL_DELAY))


def get_prefer_ipv4() -> bool:
    return _env_bool("SEFAZ_PREFER_IPV4", True)


def get_verify_tls() -> bool:
    """Whether to validate SEFAZ server certificates (off by default).

    Several authorities serve chains rooted in ICP-Brasil, which is not in
    the common trust stores.
    """
    return _env_bool("SEFAZ_VERIFY_TLS", False)


def get_user_id() -> int:
    """Tenant used by the CLI (EMISSOR_NFE_USER_ID)."""
    return int(os.environ.get("EMISSOR_NFE_USER_ID", DEFAULT_USER_ID))


def get_storage_path() -> Path:
    return get_data_dir() / "emissor.json"


# --- YAML files ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    data = yaml.safe_load(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError(f"Arquivo YAML inválido (esperado um mapeamento): {path}")
    return data
