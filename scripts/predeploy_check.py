from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TRUTHY = {"1", "true", "yes", "y", "on"}
EXPECTED_HEAD = "0002_disbursement_grant_id"


def _die(message: str, code: int = 1) -> None:
    print(message)
    raise SystemExit(code)


def _env_value(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _runtime_env() -> str:
    return (_env_value("ENV") or _env_value("ENVIRONMENT") or "dev").lower()


def _check_intent(env: str) -> None:
    if env != "prod":
        return
    if _env_value("ALLOW_PROD_DEPLOY").lower() not in TRUTHY:
        _die(
            "Refusing to deploy: ENV=prod without ALLOW_PROD_DEPLOY=1. "
            "Set ALLOW_PROD_DEPLOY=1 to confirm."
        )


def _check_alembic() -> None:
    alembic_ini = ROOT / "alembic.ini"
    versions_dir = ROOT / "alembic" / "versions"
    if not alembic_ini.exists():
        _die("Missing alembic.ini. Cannot verify migrations.")
    if not list(versions_dir.glob("*.py")):
        _die("No migration files found in alembic/versions.")

    from alembic.config import Config
    from alembic.script import ScriptDirectory

    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    script = ScriptDirectory.from_config(cfg)
    heads = script.get_heads()
    if len(heads) != 1:
        _die(f"Expected exactly one alembic head, found: {heads}")
    if heads[0] != EXPECTED_HEAD:
        _die(f"Alembic head {heads[0]} does not match the readiness revision {EXPECTED_HEAD}")


def _check_settings() -> None:
    from settings import validate_env_settings

    try:
        validate_env_settings()
    except RuntimeError as exc:
        _die(str(exc))


def main() -> None:
    env = _runtime_env()
    print(f"Predeploy checks: env={env}")

    _check_intent(env)
    _check_alembic()
    _check_settings()

    print("Predeploy checks passed.")


if __name__ == "__main__":
    main()
