"""
Configuration for the Citrea Pay watcher.

Loads and validates environment variables (or a `.env` file) for the chain
connection, the treasury seed and the periodic jobs.
"""

from typing import Dict, List

from pydantic_settings import BaseSettings

from citrea_pay.chain.config import CITREA_TESTNET


class Settings(BaseSettings):
    """Citrea Pay configuration."""

    # Treasury seed: child 0 is the treasury, children 1.. receive invoices
    mnemonic: str = ""

    # RPC Configuration
    citrea_rpc_url: str = CITREA_TESTNET.rpc_urls[0]
    citrea_rpc_urls: List[str] = []  # extra endpoints tried on failover
    citrea_chain_id: int = CITREA_TESTNET.chain_id
    rpc_timeout_seconds: int = 10

    # Assets
    native_symbol: str = "BTC"
    token_addresses: Dict[str, str] = {}
    asset_decimals: int = 18
    sweeper_contract_address: str = ""

    # Storage
    database_url: str = "sqlite:///citrea-pay.db"
    start_block: int = 12820095

    # Periodic jobs
    poll_interval_seconds: float = 2.0
    sweep_interval_seconds: float = 86400.0
    invoice_ttl_seconds: int = 15 * 60
    derivation_index_range: int = 1_000_000
    fee_bump_percent: int = 5
    max_sweep_attempts: int = 5
    receipt_timeout_seconds: int = 120

    # Server
    port: int = 3000
    log_level: str = "INFO"

    class Config:
        """Pydantic config."""
        env_file = ".env"
        case_sensitive = False

    @property
    def rpc_urls(self) -> List[str]:
        """Primary RPC first, then fallbacks, without duplicates."""
        urls: List[str] = []
        for url in [self.citrea_rpc_url, *self.citrea_rpc_urls]:
            if url and url not in urls:
                urls.append(url)
        return urls

    def is_known_asset(self, symbol: str) -> bool:
        return symbol == self.native_symbol or symbol in self.token_addresses

    def ensure_valid(self) -> None:
        """Validate required configuration.

        Raises:
            ValueError: If required configuration is missing or invalid
        """
        if not self.mnemonic or len(self.mnemonic.split()) not in (12, 15, 18, 21, 24):
            raise ValueError("MNEMONIC environment variable must hold a 12-24 word seed phrase")

        if not self.rpc_urls:
            raise ValueError("CITREA_RPC_URL environment variable is required")

        if not _is_address(self.sweeper_contract_address):
            raise ValueError(
                f"SWEEPER_CONTRACT_ADDRESS must be a valid address: {self.sweeper_contract_address!r}"
            )

        for symbol, address in self.token_addresses.items():
            if symbol == self.native_symbol:
                raise ValueError(f"Token symbol {symbol} clashes with the native asset symbol")
            if not _is_address(address):
                raise ValueError(f"Token {symbol} has an invalid contract address: {address!r}")

        if self.derivation_index_range <= 1:
            raise ValueError("DERIVATION_INDEX_RANGE must be greater than 1")

        if self.max_sweep_attempts < 1:
            raise ValueError("MAX_SWEEP_ATTEMPTS must be at least 1")

        if self.fee_bump_percent < 0:
            raise ValueError("FEE_BUMP_PERCENT must not be negative")


def _is_address(value: str) -> bool:
    if not value or not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
