"""
config.py - Centralised settings for the DID system
"""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class DIDSettings(BaseSettings):
    # Storage
    STORAGE_DIR: Path = Path("storage")

    # Identifiers
    DEFAULT_NETWORK: str = "mainnet"
    WALLET_CHAIN_ID: int = 1  # EIP-155 chain for linked wallets

    # Documents & credentials
    SERVICE_BASE_URL: str = "https://marketplace.veritoken.org"
    CREDENTIAL_CONTEXT: str = "https://veritoken.org/marketplace/v1"
    ROLE_CONTEXT_BASE: str = "https://veritoken.org/marketplace"  # + /<kind>/v1

    model_config = SettingsConfigDict(env_prefix="VERITOKEN_", env_file=".env")


settings = DIDSettings()
