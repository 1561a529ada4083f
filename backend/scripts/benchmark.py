"""
Latency benchmark for the query endpoint.

Sends a mix of repeated and distinct queries so both cache hits and full
pipeline runs are measured, then reports percentiles against the 5s
p95 target.

Usage: python scripts/benchmark.py http://localhost:8000 [-n 200] [-c 10] [--low-bandwidth]
"""
import argparse
import asyncio
import sys
import time
from statistics import mean, median, quantiles
from typing import Dict, List, Tuple

import httpx

QUERIES = [
    "What is PM Scholarship?",
    "PM internship kaise apply kare",
    "scholarship for sc students",
    "sarkari naukri for rural youth",
    "skill training certificate",
]

P95_TARGET_SECONDS = 5.0


async def send_query(client: httpx.AsyncClient, url: str, query: str, session: str, low_bandwidth: bool) -> Tuple[float, int, str]:
    """Send one query and return (elapsed, status, outcome)."""
    start = time.time()
    try:
        response = await client.post(
            url,
            json={"query": query, "lowBandwidth": low_bandwidth},
            headers={"X-Session-ID": session},
            timeout=30.0,
        )
        return (time.time() - start, response.status_code, response.headers.get("X-Query-Outcome", "-"))
    except httpx.HTTPError as e:
        print(f"Request failed: {e}", file=sys.stderr)
        return (time.time() - start, 0, "transport_error")


async def run_benchmark(base_url: str, num_requests: int, concurrency: int, low_bandwidth: bool):
    url = base_url.rstrip("/") + "/api/v1/query"
    print(f"Benchmarking {url}")
    print(f"Requests: {num_requests}, Concurrency: {concurrency}, Low bandwidth: {low_bandwidth}\n")

    semaphore = asyncio.Semaphore(concurrency)

    async with httpx.AsyncClient() as client:
        async def bounded(i: int):
            async with semaphore:
                # One session per worker slot keeps each subject under its hourly limit
                return await send_query(client, url, QUERIES[i % len(QUERIES)], f"bench-{i % 50}", low_bandwidth)

        start_time = time.time()
        results = await asyncio.gather(*[bounded(i) for i in range(num_requests)])
        total_time = time.time() - start_time

    times = [elapsed for elapsed, status, _ in results if status == 200]
    status_counts: Dict[int, int] = {}
    outcome_counts: Dict[str, int] = {}
    for _, status, outcome in results:
        status_counts[status] = status_counts.get(status, 0) + 1
        outcome_counts[outcome] = outcome_counts.get(outcome, 0) + 1

    print("=" * 60)
    print("Benchmark Results")
    print("=" * 60)
    print(f"Total requests:      {num_requests}")
    print(f"Successful requests: {len(times)}")
    print(f"Total time:          {total_time:.3f} seconds")
    print(f"Requests per second: {num_requests / total_time:.2f} [#/sec]")

    if len(times) >= 2:
        cuts: List[float] = quantiles(times, n=100)
        p95 = cuts[94]
        print(f"Mean:                {mean(times) * 1000:.2f} [ms]")
        print(f"Median:              {median(times) * 1000:.2f} [ms]")
        print(f"p95:                 {p95 * 1000:.2f} [ms]")
        print(f"p99:                 {cuts[98] * 1000:.2f} [ms]")
        print(f"Max:                 {max(times) * 1000:.2f} [ms]")
        print(f"p95 target met:      {'yes' if p95 <= P95_TARGET_SECONDS else 'NO'}")

    print("\nStatus code breakdown:")
    for code in sorted(status_counts):
        print(f"  {code}: {status_counts[code]}")

    print("\nPipeline outcomes:")
    for outcome in sorted(outcome_counts):
        print(f"  {outcome}: {outcome_counts[outcome]}")


def main():
    parser = argparse.ArgumentParser(description="Benchmark the query endpoint")
    parser.add_argument("url", help="Base URL of the service")
    parser.add_argument("-n", "--requests", type=int, default=200, help="Number of requests (default: 200)")
    parser.add_argument("-c", "--concurrency", type=int, default=10, help="Concurrency level (default: 10)")
    parser.add_argument("--low-bandwidth", action="store_true", help="Request low-bandwidth responses")

    args = parser.parse_args()

    asyncio.run(run_benchmark(args.url, args.requests, args.concurrency, args.low_bandwidth))


if __name__ == "__main__":
    main()
