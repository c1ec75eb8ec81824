import os

import uvicorn

from .config import settings


def main() -> None:
    uvicorn.run(
        "deptcrud.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
