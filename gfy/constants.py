# gfy/constants.py

APP_NAME = "GFy"
__version__ = "0.3.0.dev0"
DEFAULT_OLLAMA = "http://localhost:11434/api"
DEFAULT_MODEL = "gemma3:4b"
DEFAULT_LOG_FILENAME = "gfy.log"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_LOG_BACKUP_COUNT = 5
SETTINGS_FILENAME = "app.json"
