import asyncio


async def wait_for(condition, timeout=1.0, interval=0.005):
    """Poll `condition` on the running loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() >= deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)


async def settle(rounds=5):
    """Let already-scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
