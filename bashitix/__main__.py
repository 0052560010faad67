"""
Run the service:

  DATABASE_URL=sqlite:///./bashitix.db python -m bashitix --port 8000

Keep a single worker with SQLite; PostgreSQL can take several.
"""
import argparse
import logging

import uvicorn


def main():
    ap = argparse.ArgumentParser(description="bashitix ticketing service")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--workers", type=int, default=1)
    ap.add_argument("--log-level", default="info")
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "bashitix.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
