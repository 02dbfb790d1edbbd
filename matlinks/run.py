import logging

from matlinks.config import (
    APP_ENV,
    API_HOST,
    API_PORT,
    API_PROXY_HEADERS,
    API_TLS_CERTFILE,
    API_TLS_KEYFILE,
    DB_HOST,
    DB_NAME,
    DB_PORT,
    ENV_FILES_PRESENT,
    LOG_LEVEL,
)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ssl_kwargs() -> dict:
    certfile = API_TLS_CERTFILE
    keyfile = API_TLS_KEYFILE
    if certfile and keyfile:
        return {"ssl_certfile": certfile, "ssl_keyfile": keyfile}
    if certfile or keyfile:
        raise RuntimeError("Both API_TLS_CERTFILE and API_TLS_KEYFILE must be set together.")
    return {}


def main():
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    env_sources = ", ".join(ENV_FILES_PRESENT) if ENV_FILES_PRESENT else "none"
    logging.getLogger("matlinks").info(
        "startup env=%s db=%s@%s:%s env_files=%s", APP_ENV, DB_NAME, DB_HOST, DB_PORT, env_sources
    )

    uvicorn.run(
        "matlinks.main:app",
        host=API_HOST,
        port=API_PORT,
        proxy_headers=API_PROXY_HEADERS,
        log_config=None,
        **_ssl_kwargs(),
    )


if __name__ == "__main__":
    main()
