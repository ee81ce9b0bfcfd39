import asyncio
from functools import partial
from typing import Any, Callable


async def call_sync_from_async(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Run a blocking callable in the default executor and await its result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
