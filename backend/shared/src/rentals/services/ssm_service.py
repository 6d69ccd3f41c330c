"""Secrets from AWS SSM Parameter Store.

The rental service keeps three secrets in SecureString parameters below
`/rentals/{environment}/`:

    stripe/secret_key       processor API key
    stripe/webhook_secret   webhook signing secret
    auth/jwt_secret         bearer token signing secret

Values are decrypted on first use and kept for the life of the process.
"""

import logging
import os
from functools import lru_cache
from typing import ClassVar

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

PARAMETER_ROOT = "/rentals"

# ClientError codes worth a more specific message than the raw error
_CLIENT_ERROR_HINTS: dict[str, str] = {
    "ParameterNotFound": "parameter does not exist",
    "AccessDeniedException": "access denied; check IAM permissions for ssm:GetParameter",
    "ThrottlingException": "request throttled; retry later",
}


class SSMServiceError(Exception):
    """A secret could not be read from Parameter Store."""


def parameter_path(name: str, environment: str | None = None) -> str:
    """Build an environment-scoped parameter path.

    Args:
        name: Path below the environment, e.g. "stripe/secret_key"
        environment: Environment name. Defaults to ENVIRONMENT env var.

    Returns:
        Full path, e.g. "/rentals/dev/stripe/secret_key"
    """
    env = environment or os.getenv("ENVIRONMENT", "dev")
    return f"{PARAMETER_ROOT}/{env}/{name.strip('/')}"


class SSMService:
    """Reads decrypted SecureString parameters with a process-wide cache."""

    _instance: ClassVar["SSMService | None"] = None
    _cache: ClassVar[dict[str, str]] = {}

    def __init__(self) -> None:
        self._client = boto3.client("ssm")

    @classmethod
    def get_instance(cls) -> "SSMService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Return the decrypted value of a parameter.

        Args:
            name: Full parameter path, see parameter_path()
            use_cache: Serve a previously read value without calling SSM

        Raises:
            SSMServiceError: If the parameter is missing or unreadable
        """
        if use_cache and name in self._cache:
            return self._cache[name]

        logger.info("Reading SSM parameter %s", name)
        try:
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            hint = _CLIENT_ERROR_HINTS.get(code, str(e))
            raise SSMServiceError(f"SSM parameter {name}: {hint}") from e

        value = response["Parameter"]["Value"]
        self._cache[name] = value
        return value

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("SSM parameter cache cleared")


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance."""
    return SSMService.get_instance()
