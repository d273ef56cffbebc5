import argparse
import logging
import os

from .app import create_app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Blood on the Clocktower session server")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 7105)), help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode and socket logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {}
    if args.debug:
        overrides.update(DEBUG=True, SOCKETIO_LOGGER=True, ENGINEIO_LOGGER=True)
    app, socketio = create_app(overrides)

    app.logger.info("Clocktower server running on http://localhost:%d", args.port)
    socketio.run(app, host=args.host, port=args.port, debug=args.debug,
                 use_reloader=False, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
