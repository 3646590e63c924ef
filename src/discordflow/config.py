"""
discordflow client configuration.

Simple, centralized configuration for the Discord client.
Loads from environment variables (and a local .env file) with sensible defaults.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .intents import DEFAULT_INTENTS

logger = logging.getLogger("discordflow.config")

DEFAULT_API_URL = "https://discord.com/api/v10"
DEFAULT_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class ClientConfig:
    """
    Discord client configuration.

    Flat structure; every field has a default except the bot token.
    """

    token: str

    # Endpoints
    api_url: str = DEFAULT_API_URL
    gateway_url: str = DEFAULT_GATEWAY_URL

    # Identify
    intents: int = int(DEFAULT_INTENTS)
    client_name: str = "discordflow"

    # REST
    request_timeout: float = 15.0  # seconds
    max_retries: int = 3  # retries for 429 / 5xx / network errors
    global_rate: float = 50.0  # requests per second across all routes

    # Gateway
    connect_timeout: float = 10.0  # seconds to dial
    handshake_timeout: float = 30.0  # seconds per handshake frame
    max_message_size: int = 2**22
    max_reconnect_attempts: int = 5
    base_reconnect_delay: float = 1.0  # seconds, doubled per attempt
    max_reconnect_delay: float = 60.0

    # Dispatch
    isolate_handler_errors: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT

    def __post_init__(self):
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values."""
        if not self.token:
            raise ValueError("Discord bot token must not be empty")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.global_rate <= 0:
            raise ValueError("global_rate must be positive")
        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be >= 1")
        if self.base_reconnect_delay < 0 or self.max_reconnect_delay < self.base_reconnect_delay:
            raise ValueError("reconnect delays must satisfy 0 <= base <= max")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ClientConfig":
        """
        Load configuration from environment variables.

        Required environment variables:
        - DISCORD_TOKEN: Bot token

        Args:
            env_file: Optional path to a .env file (defaults to ./.env lookup)

        Returns:
            ClientConfig instance

        Raises:
            ValueError: If required environment variables are missing
        """
        load_dotenv(env_file)

        token = os.environ.get("DISCORD_TOKEN")
        if not token:
            raise ValueError("Missing required environment variables: DISCORD_TOKEN")

        config = cls(
            token=token,
            api_url=os.environ.get("DISCORD_API_URL", DEFAULT_API_URL),
            gateway_url=os.environ.get("DISCORD_GATEWAY_URL", DEFAULT_GATEWAY_URL),
            intents=int(os.environ.get("DISCORD_INTENTS", str(int(DEFAULT_INTENTS)))),
            request_timeout=float(os.environ.get("DISCORD_REQUEST_TIMEOUT", "15.0")),
            max_retries=int(os.environ.get("DISCORD_MAX_RETRIES", "3")),
            global_rate=float(os.environ.get("DISCORD_GLOBAL_RATE", "50.0")),
            connect_timeout=float(os.environ.get("DISCORD_CONNECT_TIMEOUT", "10.0")),
            handshake_timeout=float(os.environ.get("DISCORD_HANDSHAKE_TIMEOUT", "30.0")),
            max_reconnect_attempts=int(os.environ.get("DISCORD_MAX_RECONNECT_ATTEMPTS", "5")),
            base_reconnect_delay=float(os.environ.get("DISCORD_RECONNECT_DELAY", "1.0")),
            max_reconnect_delay=float(os.environ.get("DISCORD_MAX_RECONNECT_DELAY", "60.0")),
            isolate_handler_errors=os.environ.get("DISCORD_ISOLATE_HANDLER_ERRORS", "false").lower() == "true",
            log_level=os.environ.get("DISCORD_LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("DISCORD_LOG_FORMAT", DEFAULT_LOG_FORMAT),
        )

        logger.info(f"Loaded client config (api={config.api_url}, intents={config.intents})")
        return config


def setup_logging(config: ClientConfig) -> logging.Logger:
    """Set up logging configuration for the client."""
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=config.log_format,
    )
    return logging.getLogger("discordflow")
