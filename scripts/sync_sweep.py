"""Run a cross-record sync sweep for one or more verticals and print the reports."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for bulk payment/discount convergence."""

    parser = argparse.ArgumentParser(description="Trigger POST /sync/{vertical} for each vertical.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--vertical", action="append", dest="verticals", required=True)
    parser.add_argument("--expire-stale", action="store_true", help="expire past-due PENDING records first")
    args = parser.parse_args()

    with httpx.Client(base_url=args.base_url, timeout=60.0) as client:
        if args.expire_stale:
            for vertical in args.verticals:
                resp = client.post("/maintenance/expire-stale", params={"vertical": vertical})
                resp.raise_for_status()
                print(json.dumps(resp.json(), indent=2))
        for vertical in args.verticals:
            resp = client.post(f"/sync/{vertical}")
            resp.raise_for_status()
            print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
