# voteguard/__init__.py

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
import os
from flask_jwt_extended import JWTManager
from datetime import timedelta

from voteguard.config import Config, configure_logging

configure_logging()

app = Flask(__name__)
app.config['SECRET_KEY'] = Config.SECRET_KEY
app.config['TESTING'] = Config.TESTING
app.config['JWT_SECRET_KEY'] = Config.JWT_SECRET_KEY
app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=Config.JWT_ACCESS_TOKEN_MINUTES)
app.config['JWT_TOKEN_LOCATION'] = ['headers']

jwt = JWTManager(app)


@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    return jsonify({"error": "TOKEN_EXPIRED", "message": "Token has expired"}), 401


app.config['SQLALCHEMY_DATABASE_URI'] = Config.DATABASE_URL
app.config['SQLALCHEMY_ENGINE_OPTIONS'] = Config.engine_options()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['RATELIMIT_ENABLED'] = os.getenv('RATELIMIT_ENABLED', 'true').lower() == 'true'

# Fix proxy headers for HTTPS
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

# Initialize extensions
db = SQLAlchemy(app)
migrate = Migrate(app, db, directory=os.path.join(os.path.dirname(__file__), 'database', 'migrations'))

limiter = Limiter(key_func=get_remote_address, default_limits=["10000/hour"],
                  storage_uri=Config.RATELIMIT_STORAGE_URI)
limiter.init_app(app)


# Ensure model modules are imported so SQLAlchemy metadata is populated
# before Flask-Migrate / Alembic inspects it.
from voteguard.database import models  # noqa: F401,E402

from voteguard import routes  # noqa: F401,E402
from voteguard import cli  # noqa: F401,E402
