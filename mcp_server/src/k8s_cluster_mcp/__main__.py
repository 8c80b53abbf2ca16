"""
Entry point: ``python -m k8s_cluster_mcp``.

On Windows the ProactorEventLoop policy must be set before uvicorn creates its
loop, and auto-reload stays off because the reloader's child process does not
inherit the policy.
"""
import sys
import asyncio

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())


def main():
    import uvicorn

    from k8s_cluster_mcp.server import create_app
    from k8s_cluster_mcp.settings import get_settings

    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
