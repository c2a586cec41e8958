from flask import Flask, render_template
from flask_cors import CORS
from .config import Config
from .context import EXTENSION_KEY, build_context
from .extensions import limiter
from .logging_utils import configure_logging


def create_app(test_config=None, *, http=None, clock=None):
    app = Flask(__name__, static_folder="static", template_folder="templates")
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    # CORS
    CORS(app, origins=app.config.get("CORS_ORIGINS", "*"))

    # Rate limiting (RATELIMIT_DEFAULT / RATELIMIT_ENABLED are read from app.config)
    limiter.init_app(app)

    # Services
    extra = {"http": http}
    if clock is not None:
        extra["clock"] = clock
    # The job worker is started by run.py or `flask run-worker`, never here:
    # CLI invocations build an app too and must not recover live jobs.
    app.extensions[EXTENSION_KEY] = build_context(app.config, **extra)

    # Register blueprints
    from .routes.api import api_bp
    app.register_blueprint(api_bp)

    from .cli import register_commands
    register_commands(app)

    @app.route("/")
    def index():
        return render_template("index.html")

    return app
