import os

import uvicorn

from cascade_categorizer.app import app
from cascade_categorizer.core.settings import get_env_int
from cascade_categorizer.logger import get_logging_config


def main() -> None:
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_env_int("PORT", 8000, min_value=1),
        log_config=get_logging_config(),
    )


if __name__ == "__main__":
    main()
