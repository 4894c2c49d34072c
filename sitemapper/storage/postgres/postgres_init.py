from loguru import logger
from tortoise import Tortoise

from sitemapper.utils.db_utils import redact_dsn, to_asyncpg_dsn

MODEL_MODULES = ["sitemapper.storage.models"]


async def init_database(db_url: str, *, generate_schemas: bool = True) -> None:
    """
    Connect Tortoise to the configured database and create/verify the tables.
    """
    db_url = to_asyncpg_dsn(db_url)

    logger.info(f"Initializing database {redact_dsn(db_url)} and ORM models...")

    await Tortoise.init(
        db_url=db_url,
        modules={"models": MODEL_MODULES},
    )

    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
        logger.info("Database tables created or verified.")
