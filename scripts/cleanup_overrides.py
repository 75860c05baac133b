from __future__ import annotations

import asyncio

from authplane.core.config import get_settings
from authplane.core.logging import configure_logging
from authplane.persistence.db import build_engine, build_session_factory
from authplane.services.overrides import OverrideEngine


async def cleanup() -> None:
    # Physically delete overrides whose expiry has passed; reads already ignore them.
    engine = build_engine(get_settings())
    try:
        deleted = await OverrideEngine(build_session_factory(engine)).cleanup_expired_overrides()
    finally:
        await engine.dispose()
    print(f"deleted_expired_overrides={deleted}")


if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    asyncio.run(cleanup())
