"""Entry point serving the workflow engine with uvicorn."""

import uvicorn

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


def main():
    """Run the API server."""
    uvicorn.run(app, **{k: v for k, v in config.get_uvicorn_config().items() if k != "reload"})


if __name__ == "__main__":
    main()
