"""SLA sweeper - periodically expires, reminds and escalates lab orders."""

import argparse
import logging
import time

from sqlalchemy import create_engine

import config
from lab_orders.adapters import orm
from lab_orders.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from sla_escalation.service_layer import escalation
from sla_escalation.service_layer.sweep import run_sla_sweep

logging.basicConfig(
    level=getattr(logging, config.get_log_level()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the lab order SLA sweep")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=config.get_sweep_interval_seconds(),
        help="seconds between sweeps (default: SLA_SWEEP_INTERVAL_SECONDS or 900)",
    )
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the SLA sweeper."""
    args = parse_args(argv)
    logger.info("Lab order SLA sweeper starting")

    # Initialize database and ORM mappers (Cosmic Python pattern)
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("✓ Database tables created and ORM mappers initialized")

    rules = escalation.default_rules()
    while True:
        try:
            run_sla_sweep(SqlAlchemyUnitOfWork(), rules)
        except Exception:
            logger.exception("SLA sweep failed")
            if args.once:
                raise
        if args.once:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
