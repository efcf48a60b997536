from datetime import datetime
import logging
import platform

import astropy
import numpy as np
import scipy

logger = logging.getLogger(__name__)


def start_audit(recipe_name: str | None = None) -> list[str]:
    audit = [f"Session start: {datetime.now().isoformat()}",
             f"Platform: {platform.platform()}",
             f"numpy {np.__version__}, scipy {scipy.__version__}, astropy {astropy.__version__}"]
    if recipe_name:
        audit.append(f"Recipe: {recipe_name}")
    return audit


def log_step(audit: list[str], msg: str):
    audit.append(msg)
    logger.debug(msg)
