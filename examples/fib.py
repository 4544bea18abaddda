"""CPU-bound handler: computes Fibonacci numbers in the worker process.

The body is a number ``n``; the response is the n-th Fibonacci number.
Run it with the sample config:

    poolforge serve --config examples/poolforge.toml

then:

    curl -d 30 http://127.0.0.1:8000/
    poolforge status
"""

from __future__ import annotations

import asyncio


def _fib(n: int) -> int:
    if n < 2:
        return n
    return _fib(n - 1) + _fib(n - 2)


async def handle(payload: bytes) -> str:
    """Compute fib(n) off the worker's event loop so heartbeats keep flowing."""
    n = int(payload.strip() or b"20")
    if n < 0 or n > 35:
        msg = f"n must be between 0 and 35, got {n}"
        raise ValueError(msg)
    result = await asyncio.to_thread(_fib, n)
    return f"{result}\n"
