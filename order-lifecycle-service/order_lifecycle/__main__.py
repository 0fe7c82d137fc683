import uvicorn

from . import config


def main():
    uvicorn.run("order_lifecycle.main:app", host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
