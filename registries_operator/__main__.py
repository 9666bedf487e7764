"""
Entry point: `python -m registries_operator`.
"""
import logging

import kopf

from registries_operator.config import settings
from registries_operator import handlers  # noqa: F401  (registers the handlers)


def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    kopf.run(clusterwide=True)


if __name__ == "__main__":
    main()
