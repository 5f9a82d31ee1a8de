"""Entry point for running the workflow engine service."""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


def main():
    import uvicorn
    uvicorn.run("hitl_engine.main:app", **config.get_uvicorn_config())


if __name__ == "__main__":
    main()
