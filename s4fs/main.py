import logging
from contextlib import AsyncExitStack

import anyio
from fastapi import FastAPI
from pydantic_settings import BaseSettings, SettingsConfigDict

from s4fs.api import Config, router
from s4fs.depends import bind
from s4fs.storage import StorageBackend


class Settings(BaseSettings):
    """Read from ``S4FS_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="S4FS_", extra="ignore")

    bucket: str
    region: str = "us-east-1"
    endpoint: str | None = None
    access_key_id: str = ""
    access_key_secret: str = ""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


def make_app(
    storage: StorageBackend,
    config: Config,
) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    bind(app, StorageBackend, storage)
    bind(app, Config, config)
    return app


async def main() -> None:
    import uvicorn

    from s4fs.storage.s3 import S3Storage

    settings = Settings()  # type: ignore[call-arg]
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async with AsyncExitStack() as stack:
        fs = await stack.enter_async_context(
            S3Storage.connect(
                access_key_id=settings.access_key_id,
                access_key_secret=settings.access_key_secret,
                region=settings.region,
                endpoint=settings.endpoint,
            )
        )
        # TO TEST: uncomment these lines to serve from memory instead of S3
        # from s4fs.storage.memory import InMemoryBackend
        # fs = InMemoryBackend()
        app = make_app(fs, Config(bucket=settings.bucket))

        config = uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)
        server = uvicorn.Server(config)
        await server.serve()


if __name__ == "__main__":
    anyio.run(main)
