import logging
from app import build_engine, make_app
from settings import get_settings
# Entrypoint
if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = make_app(build_engine(settings), settings)
    logging.getLogger(__name__).info("%s %s serving %s on %s:%s", settings.SERVICE_NAME, settings.SERVICE_VERSION,
                                     settings.REQUESTING_BASE_URL or "/", settings.HOST, settings.PORT)
    # Flask serves each request on its own thread; every request is its own cascade
    app.run(host=settings.HOST, port=settings.PORT, debug=False)
