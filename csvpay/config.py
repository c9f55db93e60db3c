from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# Values below are read at import time, so .env must be loaded first
load_dotenv()


def _parse_csv_ints(raw: str) -> List[int]:
    ids: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            pass
    return ids


def _parse_csv_strs(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


DEFAULT_SCOPES = (
    "read_balance,read_list_wallets,read_list_payees,read_list_transactions,"
    "write_create_payee,write_send_payment,write_create_wallet"
)


@dataclass
class Settings:
    app_env: str = os.getenv("APP_ENV", "production")
    tz: str = os.getenv("TZ", "UTC")

    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_admin_ids: List[int] = field(default_factory=lambda: _parse_csv_ints(os.getenv("TELEGRAM_ADMIN_IDS", "")))

    db_url: str = os.getenv("DB_URL", "sqlite+aiosqlite:///./csvpay.db")

    payman_base_url: str = os.getenv("PAYMAN_BASE_URL", "https://agent.payman.ai")
    payman_client_id: str = os.getenv("PAYMAN_CLIENT_ID", "")
    payman_client_secret: str = os.getenv("PAYMAN_CLIENT_SECRET", "")
    payman_redirect_uri: str = os.getenv("PAYMAN_REDIRECT_URI", "")
    payman_scopes: List[str] = field(default_factory=lambda: _parse_csv_strs(os.getenv("PAYMAN_SCOPES", DEFAULT_SCOPES)))
    # Local bookkeeping only; the agent decides whether a token is still valid
    payman_token_ttl_seconds: int = int(os.getenv("PAYMAN_TOKEN_TTL_SECONDS", "3600"))
    payman_timeout_seconds: float = float(os.getenv("PAYMAN_TIMEOUT_SECONDS", "60"))
    payman_command_template: str = os.getenv(
        "PAYMAN_COMMAND_TEMPLATE", "Send {amount} from {source_wallet} to {payee_name}"
    )

    payment_row_delay_ms: int = int(os.getenv("PAYMENT_ROW_DELAY_MS", "500"))
    csv_max_rows: int = int(os.getenv("CSV_MAX_ROWS", "500"))


settings = Settings()
