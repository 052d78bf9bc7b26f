"""Run the service with uvicorn: ``python -m promptly``."""
import uvicorn

from promptly import config


def main() -> None:
    uvicorn.run("promptly.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
