from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

# Environment variable -> dotted config key. Unset or empty variables are ignored.
ENV_OVERRIDES: Dict[str, str] = {
    "QUEUE_MAX_CONCURRENT_JOBS": "queue.max_concurrent_jobs",
    "QUEUE_MAX_RETRIES": "queue.max_retries",
    "QUEUE_RETRY_DELAY_BASE": "queue.retry_delay_base",
    "QUEUE_RETRY_DELAY_MULTIPLIER": "queue.retry_delay_multiplier",
    "QUEUE_PROCESSOR_INTERVAL_MS": "queue.processor_interval_ms",
    "QUEUE_STUCK_TIMEOUT_MINUTES": "queue.stuck_timeout_minutes",
    "QUEUE_REAPER_INTERVAL_MINUTES": "queue.reaper_interval_minutes",
    "QUEUE_RETENTION_DAYS": "queue.retention_days",
    "JOBS_DB_PATH": "storage.database_path",
    "UPLOAD_DIR": "storage.upload_dir",
    "S3_BUCKET_NAME": "audit.s3_bucket",
    "S3_FOLDER": "audit.s3_folder",
    "AUDIT_LOCAL_DIR": "audit.local_dir",
    "ANALYSIS_URL": "analysis.url",
    "ANALYSIS_TIMEOUT_SECONDS": "analysis.timeout_seconds",
    "EM_NOTIFICATION_URL": "notifications.editorial_manager_url",
    "SCHOLARONE_NOTIFICATION_URL": "notifications.scholarone_url",
    "MAIL_NOTIFICATION_URL": "notifications.mail_url",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def _env_dotlist(environ: Mapping[str, str]) -> List[str]:
    return [f"{key}={environ[name]}" for name, key in ENV_OVERRIDES.items() if environ.get(name)]


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> DictConfig:
    """
    Build the runtime settings: packaged defaults < environment < explicit overrides.

    Args:
        overrides: Nested mapping merged last (e.g. ``{"queue": {"max_retries": 1}}``)
        environ: Environment to read overrides from (default: ``os.environ``)
        use_dotenv: Load a ``.env`` file into the process environment first

    Returns:
        A read-only DictConfig in struct mode; unknown keys raise on merge.
    """
    if use_dotenv and environ is None:
        load_dotenv()
    env = os.environ if environ is None else environ

    base = OmegaConf.create(get_default_config_container(resolve=False))
    OmegaConf.set_struct(base, True)

    layers = [base, OmegaConf.from_dotlist(_env_dotlist(env))]
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = OmegaConf.merge(*layers)
    OmegaConf.set_readonly(merged, True)
    return merged


def backoff_delay_ms(settings: DictConfig, retries: int) -> float:
    queue = settings.queue
    return float(queue.retry_delay_base) ** retries * float(queue.retry_delay_multiplier)


def priority_value(settings: DictConfig, name: str) -> int:
    return int(settings.queue.priorities[name.upper()])
