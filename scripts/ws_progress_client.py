from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

import httpx
import websockets

TERMINAL = {"COMPLETED", "CANCELLED", "FAILED", "ERROR"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start a quiz job (optional) and follow /ws/progress/<job_id> events.")
    parser.add_argument("--base-url", default="http://localhost:8000", help="FastAPI base URL.")
    parser.add_argument("--job-id", help="Existing job id to listen for")
    parser.add_argument("--file", action="append", default=[], help="File to upload as a new quiz job (repeatable)")
    parser.add_argument("--api-key", help="API key sent with the upload")
    parser.add_argument("--num-questions", type=int, default=10)
    parser.add_argument("--format", default="multipleChoice", help="multipleChoice | openEnded | mixed | problemSolving")
    parser.add_argument("--eco", action="store_true", help="Never escalate OCR to the AI model")
    args = parser.parse_args()
    if not args.job_id and not args.file:
        parser.error("either --job-id or at least one --file is required")
    return args


async def create_job(args: argparse.Namespace) -> str:
    options = {"num_questions": args.num_questions, "question_format": args.format, "eco_mode": args.eco}
    files = [("files", (Path(p).name, Path(p).read_bytes())) for p in args.file]
    data = {"options": json.dumps(options)}
    if args.api_key:
        data["apiKey"] = args.api_key
    async with httpx.AsyncClient(base_url=args.base_url, timeout=60.0) as client:
        response = await client.post("/api/quiz-jobs", files=files, data=data)
        response.raise_for_status()
        return response.json()["job_id"]


async def main() -> None:
    args = parse_args()
    job_id = args.job_id or await create_job(args)
    ws_url = f"{args.base_url.rstrip('/').replace('http', 'ws')}/ws/progress/{job_id}"
    print(f"Connecting to {ws_url}")
    async with websockets.connect(ws_url) as ws:
        async for msg in ws:
            print(msg)
            try:
                status = str(json.loads(msg).get("status", "")).upper()
            except json.JSONDecodeError:
                continue
            if status in TERMINAL:
                break


if __name__ == "__main__":
    asyncio.run(main())
