# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Logging setup shared by all streamscale components."""

import logging
import os
import sys
from typing import Optional

LOG_LEVEL_ENV = "STREAMSCALE_LOG"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_configured = False


def configure_streamscale_logging(level: Optional[str] = None) -> None:
    """Attach a stderr handler to the ``streamscale`` logger hierarchy.

    Safe to call from every module; only the first call installs the handler.
    An explicit ``level`` always updates the level, otherwise it is read from
    the STREAMSCALE_LOG environment variable (default: info).
    """
    global _configured

    root = logging.getLogger("streamscale")
    if level is not None:
        root.setLevel(_LEVELS.get(level.lower(), logging.INFO))
    if _configured:
        return

    if level is None:
        env_level = os.environ.get(LOG_LEVEL_ENV, "info").lower()
        root.setLevel(_LEVELS.get(env_level, logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    # Handled here; do not duplicate through the root logger.
    root.propagate = False
    _configured = True
