import sys

import uvicorn

from .config import ConfigError, load_monitor_config, settings
from .main import create_app, setup_logging

def main() -> int:
    setup_logging(settings.LOG_LEVEL)
    try:
        config = load_monitor_config(settings.config_path)
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    host, port = config.listen_address()
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0

if __name__ == "__main__":
    sys.exit(main())
