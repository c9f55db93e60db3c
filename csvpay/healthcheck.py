import asyncio
import os
import sys

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from csvpay.config import settings

# Healthcheck: validate ENV, Telegram token presence, DB connectivity (SELECT 1),
# and optional Payman reachability.
#
# You can skip the Payman check by setting HEALTHCHECK_SKIP_PAYMAN=1
# (useful in CI or when Payman is temporarily unavailable).


async def _check_db() -> bool:
    if not settings.db_url:
        return False
    try:
        engine = create_async_engine(settings.db_url, pool_pre_ping=True)
        async with engine.connect() as conn:  # type: ignore[func-returns-value]
            await conn.execute(text("SELECT 1"))
        await engine.dispose()
        return True
    except Exception as e:
        print(f"db error: {e}", file=sys.stderr)
        return False


async def _check_payman() -> bool:
    base = (settings.payman_base_url or "").rstrip("/")
    if not base or not settings.payman_client_id:
        return False
    try:
        timeout = httpx.Timeout(12.0, connect=6.0, read=6.0)
        async with httpx.AsyncClient(timeout=timeout) as client:
            # Any non-5xx answer means the agent host is up; no token is spent here
            resp = await client.get(base)
            return resp.status_code < 500
    except httpx.HTTPError as e:
        print(f"payman error: {e}", file=sys.stderr)
        return False


def main() -> int:
    if not settings.telegram_bot_token:
        print("missing TELEGRAM_BOT_TOKEN", file=sys.stderr)
        return 1

    ok_db = asyncio.run(_check_db())
    if not ok_db:
        print("db not ready", file=sys.stderr)
        return 1

    skip_payman = os.getenv("HEALTHCHECK_SKIP_PAYMAN", "0").strip().lower() in {"1", "true", "yes", "on"}
    if not skip_payman:
        ok_payman = asyncio.run(_check_payman())
        if not ok_payman:
            print("payman not ready", file=sys.stderr)
            return 1

    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
