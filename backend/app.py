import atexit
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(name)s %(levelname)s: %(message)s",
)

from flask import Flask, jsonify
from flask_cors import CORS

app = Flask(__name__)
CORS(app)

# Register blueprints
from routes.yeelight import yeelight_bp, get_array
from services.yeelight_errors import ConfigurationError

app.register_blueprint(yeelight_bp)


@app.get("/api/health")
def health():
    return jsonify({"status": "ok"})


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


def _shutdown():
    """Fade the lights out and release sockets when the process exits."""
    try:
        array = get_array()
    except ConfigurationError:
        return
    if array.is_open:
        try:
            array.switch_off()
        except Exception:
            logging.getLogger(__name__).exception("Failed to switch off Yeelights")
        array.close()


if __name__ == "__main__":
    atexit.register(_shutdown)

    is_dev = os.environ.get("APP_ENV") == "dev"
    if os.environ.get("YEELIGHT_AUTO_OPEN", "").lower() in ("1", "true", "yes"):
        try:
            get_array().open()
        except Exception:
            logging.getLogger(__name__).exception("Failed to open Yeelight array")

    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        debug=is_dev,
        use_reloader=False,
    )
