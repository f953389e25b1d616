import logging

from .settings import settings

log = logging.getLogger("api")

def main():
    import uvicorn
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    log.info("Starting device relay on %s:%d", settings.host, settings.port)
    uvicorn.run("device_relay.main:create_app", factory=True, host=settings.host, port=settings.port, reload=False)

if __name__ == "__main__":
    main()
