from __future__ import annotations

import os
from pathlib import Path


APP_HOME = (
    Path(os.getenv("JELLI_HOME"))
    if os.getenv("JELLI_HOME")
    else Path.home() / ".jelli"
).resolve()

CONFIG_DIR = APP_HOME / "config"
LOG_DIR = APP_HOME / "logs"
