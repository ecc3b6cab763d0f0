import argparse

import uvicorn

from comfy_batch.core.config import settings
from comfy_batch.core.logging_config import setup_logging


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the Comfy Batch API and queue worker")
    parser.add_argument("--host", default=settings.HOST)
    parser.add_argument("--port", type=int, default=settings.PORT)
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    # Single worker: the queue driver assumes one process owns the output directory
    uvicorn.run("comfy_batch.main:app", host=args.host, port=args.port, workers=1, log_config=None)


if __name__ == "__main__":
    main()
