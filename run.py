import logging

from sendto import create_app
from sendto.context import get_context

logger = logging.getLogger("sendto")

if __name__ == "__main__":
    app = create_app()
    if app.config["JOBS_WORKER_ENABLED"]:
        with app.app_context():
            get_context().start_worker()
    host, port = app.config["HOST"], app.config["PORT"]
    logger.info("Send to reMarkable relay on http://%s:%s (signup %s)",
                host, port, "disabled" if app.config["SIGNUP_DISABLED"] else "enabled")
    app.run(host=host, port=port)
