"""
Punto Settlement - Runtime Configuration

Settings are read from environment variables (the CLI loads a .env file
first via python-dotenv).

Environment Variables:
    STORAGE_BACKEND=memory            # memory | json | postgresql
    DATA_FILE=punto_data.json
    DATABASE_URL=postgresql://...
    CHAIN_RPC_URL=http://localhost:8545
    TREASURY_SIGNER=0x...             # Account the RPC node signs with
    TOKEN_ADDRESS=0x8335...           # USDC on Base
    TOKEN_DECIMALS=6
    MINOR_UNIT_DECIMALS=2
    CURRENCY=USDC
    PUBLISH_BUFFER_PERCENT=10
    CONFIRMATIONS=1
    RECEIPT_POLL_INTERVAL=2.0
    PUNTO_API_KEY=...
    PUNTO_REQUIRE_AUTH=true
    LOG_LEVEL=INFO
    LOG_FORMAT=json
"""

import os
from dataclasses import dataclass

USDC_ADDRESS_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Configuration for the settlement engine and its HTTP surface."""

    # Storage
    storage_backend: str = "memory"
    data_file: str = "punto_data.json"
    database_url: str | None = None

    # Chain
    chain_rpc_url: str = "http://localhost:8545"
    treasury_signer: str | None = None
    token_address: str = USDC_ADDRESS_BASE
    token_decimals: int = 6
    confirmations: int = 1
    receipt_poll_interval: float = 2.0
    use_mock_chain: bool = False

    # Money
    currency: str = "USDC"
    minor_unit_decimals: int = 2
    publish_buffer_percent: int = 10

    # API
    api_key: str | None = None
    require_auth: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        """Create configuration from environment variables."""
        return cls(
            storage_backend=os.getenv("STORAGE_BACKEND", "memory").lower(),
            data_file=os.getenv("DATA_FILE", "punto_data.json"),
            database_url=os.getenv("DATABASE_URL"),
            chain_rpc_url=os.getenv("CHAIN_RPC_URL", "http://localhost:8545"),
            treasury_signer=os.getenv("TREASURY_SIGNER"),
            token_address=os.getenv("TOKEN_ADDRESS", USDC_ADDRESS_BASE),
            token_decimals=int(os.getenv("TOKEN_DECIMALS", "6")),
            confirmations=int(os.getenv("CONFIRMATIONS", "1")),
            receipt_poll_interval=float(os.getenv("RECEIPT_POLL_INTERVAL", "2.0")),
            use_mock_chain=_env_bool("USE_MOCK_CHAIN", "false"),
            currency=os.getenv("CURRENCY", "USDC"),
            minor_unit_decimals=int(os.getenv("MINOR_UNIT_DECIMALS", "2")),
            publish_buffer_percent=int(os.getenv("PUBLISH_BUFFER_PERCENT", "10")),
            api_key=os.getenv("PUNTO_API_KEY"),
            require_auth=_env_bool("PUNTO_REQUIRE_AUTH", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", ""),
        )
