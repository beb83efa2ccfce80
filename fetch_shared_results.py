"""Pulls a shared anomaly result through its public link and saves it locally.

Usage: python fetch_shared_results.py <share_token> [--base-url URL] [--out DIR]
"""
import argparse
import asyncio
import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any

import httpx

import config

logger = logging.getLogger("fetch_shared_results")

OUTPUT_DIR = Path(__file__).resolve().parent / "shared_results_output"


async def fetch_shared_result(client: httpx.AsyncClient, share_token: str) -> Optional[Dict[str, Any]]:
    """Returns the shared result payload, or None when the link is unknown, expired or unreachable."""
    try:
        response = await client.get(f"/shared/{share_token}", timeout=60.0)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        logger.error("Shared result %s unavailable: HTTP %s - %s", share_token, e.response.status_code, e.response.text)
    except httpx.RequestError as e:
        logger.error("Request for shared result %s failed: %s", share_token, e)
    return None


async def download_shared_report(client: httpx.AsyncClient, share_token: str) -> Optional[bytes]:
    try:
        response = await client.get(f"/shared/{share_token}/download", timeout=60.0)
        response.raise_for_status()
        return response.content
    except httpx.HTTPStatusError as e:
        logger.error("Download of shared result %s refused: HTTP %s", share_token, e.response.status_code)
    except httpx.RequestError as e:
        logger.error("Download of shared result %s failed: %s", share_token, e)
    return None


def save_to_csv(data: List[Dict[str, Any]], filepath: Path) -> bool:
    if not data:
        logger.warning("No rows to save for %s", filepath.name)
        return False
    fieldnames = list(data[0].keys())
    with open(filepath, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=fieldnames, extrasaction='ignore')
        writer.writeheader()
        writer.writerows(data)
    logger.info("Data saved to %s", filepath)
    return True


def save_to_json(data: Any, filepath: Path):
    with open(filepath, "w", encoding="utf-8") as jsonfile:
        json.dump(data, jsonfile, ensure_ascii=False, indent=4, default=str)
    logger.info("Data saved to %s", filepath)


async def run_pipeline(share_token: str, base_url: str = config.PUBLIC_BASE_URL, output_dir: Path = OUTPUT_DIR,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[Dict[str, Any]]:
    logger.info("--- Fetching shared result %s: %s ---", share_token, datetime.now())
    output_dir.mkdir(parents=True, exist_ok=True)
    async with httpx.AsyncClient(base_url=base_url, transport=transport) as client:
        result = await fetch_shared_result(client, share_token)
        if result is None:
            return None
        save_to_json(result, output_dir / f"{share_token}.json")
        save_to_csv(result.get("anomalies") or [], output_dir / f"{share_token}_anomalies.csv")
        if result.get("can_download"):
            content = await download_shared_report(client, share_token)
            if content is not None:
                (output_dir / f"{share_token}_export.xlsx").write_bytes(content)
                logger.info("Export saved to %s", output_dir / f"{share_token}_export.xlsx")
    logger.info("--- Finished: %s ---", datetime.now())
    return result


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Save a shared anomaly result to local CSV, JSON and Excel files.")
    parser.add_argument("share_token")
    parser.add_argument("--base-url", default=config.PUBLIC_BASE_URL)
    parser.add_argument("--out", type=Path, default=OUTPUT_DIR)
    args = parser.parse_args()
    asyncio.run(run_pipeline(args.share_token, args.base_url, args.out))
