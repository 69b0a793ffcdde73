import logging

from app import app
import config_frm
from routes_field_api import field_api_bp

logging.basicConfig(level=logging.INFO)

app.config.update({
    'JSON_SORT_KEYS': False,
    'FIELD_LOCATION_TIMEOUT': config_frm.FIELD_LOCATION_TIMEOUT,
    'FIELD_STRICT_SEQUENCE': config_frm.FIELD_STRICT_SEQUENCE,
})

# Register the field API blueprint
app.register_blueprint(field_api_bp)

try:
    config_frm.validate_config()
except ValueError as e:
    logging.warning(f"FRM backend not configured: {str(e)}")

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
