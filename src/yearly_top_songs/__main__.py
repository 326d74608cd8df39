"""Entry point for running as a module."""
from yearly_top_songs.config import load_local_env_file, load_settings
import logging
import uvicorn
import os

if __name__ == "__main__":
    load_local_env_file()
    logging.basicConfig(level=load_settings().log_level)
    from yearly_top_songs.api import app

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
