#!/usr/bin/env python3
"""Production entry point: serve the app with gevent's WSGI server."""

from gevent import monkey

monkey.patch_all()

from gevent import pywsgi  # noqa: E402

from app import create_app  # noqa: E402
from services.config import load_settings  # noqa: E402
from services.logging_setup import core_log  # noqa: E402


def main() -> None:
    settings = load_settings()
    app = create_app(settings)
    server = pywsgi.WSGIServer((settings.host, settings.port), app, log=None)
    core_log(
        "info", "server.start",
        host=settings.host,
        port=settings.port,
        root=app.config["MUTTLEY_ROOT"],
        auth="on" if settings.auth_enabled else "off",
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        core_log("info", "server.stop")
        server.stop()


if __name__ == "__main__":
    main()
