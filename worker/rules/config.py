"""
Configuration loader for the Rule Worker.

Settings come from environment variables (and an optional ``.env`` file)
through Pydantic Settings. Outside local development, secrets are referenced
indirectly: ``FOO_SSM_PARAM=/path`` is resolved from AWS Systems Manager
Parameter Store into ``FOO`` before the settings object is built.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

import boto3
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_SSM_SUFFIX = "_SSM_PARAM"
_SSM_BATCH_SIZE = 10


class Settings(BaseSettings):
    """Rule Worker configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: SecretStr
    db_connect_timeout_seconds: int = Field(default=5, gt=0)
    aws_region: str = "us-east-1"

    # Queue receiving AlertEvent messages. Empty disables publishing.
    alert_queue_url: str = ""


def _ssm_references() -> dict[str, str]:
    """Map target variable name -> SSM parameter name for every ``*_SSM_PARAM``."""
    return {
        key[: -len(_SSM_SUFFIX)]: value
        for key, value in os.environ.items()
        if key.endswith(_SSM_SUFFIX)
    }


def _resolve_ssm_params() -> None:
    """Inject SSM parameter values for every ``*_SSM_PARAM`` reference.

    ``DATABASE_URL_SSM_PARAM=/rules/prod/db-url`` results in
    ``DATABASE_URL`` holding the decrypted parameter value. Parameters that
    SSM reports as invalid are left unresolved and logged.
    """
    references = _ssm_references()
    if not references:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    names = sorted(set(references.values()))
    resolved: dict[str, str] = {}
    for start in range(0, len(names), _SSM_BATCH_SIZE):
        response = ssm.get_parameters(
            Names=names[start : start + _SSM_BATCH_SIZE],
            WithDecryption=True,
        )
        resolved.update({p["Name"]: p["Value"] for p in response["Parameters"]})
        for missing in response.get("InvalidParameters", []):
            logger.warning("SSM parameter %s could not be resolved", missing)

    for target, param_name in references.items():
        if param_name in resolved:
            os.environ[target] = resolved[param_name]


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and cache application settings.

    SSM references are resolved unless ``APP_ENV`` is ``local`` (the default).
    """
    if os.environ.get("APP_ENV", "local") != "local":
        _resolve_ssm_params()

    return Settings()  # type: ignore[call-arg]
