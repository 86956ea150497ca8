# wsgi.py
import os

from app import create_app
from config import Config, DevelopmentConfig, ProductionConfig
from realtime import socketio  # shared SocketIO instance

_CONFIGS = {
    "production": ProductionConfig,
    "development": DevelopmentConfig,
}

app = create_app(_CONFIGS.get(os.getenv("APP_ENV", "").lower(), Config))

# Local dev only: `python wsgi.py`
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    socketio.run(app, host="0.0.0.0", port=port)
