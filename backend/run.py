#!/usr/bin/env python3
"""
kubedeck backend server
"""

import uvicorn
from dotenv import load_dotenv

# .env must be loaded before settings are read
load_dotenv()

from kubedeck.config import get_settings
from kubedeck.core.file_config import FileConfig
from kubedeck.core.logging import setup_logging

# use our own logging setup instead of uvicorn's log_config
setup_logging()

if __name__ == "__main__":
    settings = get_settings()
    file_config = FileConfig.load(settings.config_path)
    uvicorn.run(
        "kubedeck.main:app",
        host=settings.host,
        port=settings.port or file_config.server.port,
        reload=settings.is_debug and file_config.server.mode == "debug",
        log_level=settings.log_level.lower(),
        log_config=None,
        timeout_keep_alive=file_config.server.read_timeout,
    )
