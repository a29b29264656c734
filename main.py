import logging
import os

import uvicorn

from job_coordinator.settings import get_settings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", 8765))
    uvicorn.run("job_coordinator.api:app", host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    main()
