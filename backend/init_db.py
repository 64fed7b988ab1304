import logging
import argparse

from config import load_env_file, load_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def init_db(settings):
    """Create the webhook and connection tables if they do not exist."""
    from models.database import Base, create_db_engine
    import models.sharepoint  # noqa: F401  registers the tables on Base

    engine = create_db_engine(settings.database_url)
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    finally:
        engine.dispose()


def renew_now(settings):
    """Run one renewal pass immediately, outside the Celery schedule."""
    from services.renewal_service import run_renewal_pass

    summary = run_renewal_pass(settings)
    logger.info(f"Manual renewal pass: {summary.as_dict()}")
    return summary


def main(argv=None):
    # Parse command-line arguments
    parser = argparse.ArgumentParser(description="Initialize the SharePoint webhook renewal database")
    parser.add_argument("--renew-now", action="store_true", help="Run one renewal pass after creating tables")
    args = parser.parse_args(argv)

    load_env_file()
    settings = load_settings()
    logger.info(f"Using {settings!r}")

    init_db(settings)

    if args.renew_now:
        summary = renew_now(settings)
        if summary.failed:
            return 1

    logger.info("Database initialization completed successfully")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
