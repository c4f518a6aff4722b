"""Print payment records whose amount differs from their pricing configuration."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for amount anomaly review."""

    parser = argparse.ArgumentParser(description="Fetch the amount-mismatch anomaly report.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--vertical", required=True)
    parser.add_argument("--fail-on-mismatch", action="store_true")
    args = parser.parse_args()

    resp = httpx.get(f"{args.base_url}/anomalies/{args.vertical}/amount-mismatch", timeout=10.0)
    resp.raise_for_status()
    rows = resp.json()
    print(json.dumps(rows, indent=2))
    if args.fail_on_mismatch and rows:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
