from botfleet.services.auth_service import (
    verify_password, get_password_hash, create_access_token,
    decode_access_token, authenticate_user, create_user,
    get_user_by_id, get_user_by_email, count_user_bots,
)
from botfleet.services.vault import CredentialVault, get_vault
from botfleet.services.bot_store import BotStore, BotCredentials

__all__ = [
    "verify_password",
    "get_password_hash",
    "create_access_token",
    "decode_access_token",
    "authenticate_user",
    "create_user",
    "get_user_by_id",
    "get_user_by_email",
    "count_user_bots",
    "CredentialVault",
    "get_vault",
    "BotStore",
    "BotCredentials",
]
