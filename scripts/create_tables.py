"""Create the flag tables directly (local dev / SQLite); use alembic elsewhere."""
import logging

from flagops.db.session import engine
from flagops.logging_config import setup_logging
from flagops.models import Base

logger = logging.getLogger("flagops.db")


def create_tables() -> None:
    tables = ", ".join(sorted(Base.metadata.tables))
    logger.info("Creating tables on %s: %s", engine.url.render_as_string(hide_password=True), tables)
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    setup_logging()
    create_tables()
