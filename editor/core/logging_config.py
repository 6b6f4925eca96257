# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Logging setup for applications embedding the editor core."""

import logging

from config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(app_settings=None) -> None:
    """Configure root logging from settings. DEBUG=true wins over LOG_LEVEL."""
    app_settings = app_settings or settings
    if app_settings.debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, app_settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger(__name__).info(
        f"Logging configured ({logging.getLevelName(level)}, environment={app_settings.environment})"
    )
