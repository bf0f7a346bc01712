"""Secrets resolution for stored SNMP passphrases.

Passphrases in the devices file are kept in their stored form and only
resolved while a session is being built. ``env:NAME`` values are read
from the environment; any other value is taken literally.
"""

import logging
import os

from .device_config import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "env:"


class EnvSecretsResolver:
    def resolve(self, value: str) -> str:
        if not value.startswith(ENV_PREFIX):
            return value
        name = value[len(ENV_PREFIX):]
        secret = os.environ.get(name)
        if not secret:
            raise ConfigurationError(f"Secret environment variable {name!r} is not set")
        return secret
