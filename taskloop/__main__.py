"""taskloop CLI entry point."""

from __future__ import annotations

import argparse
import sys

# Colors
G = "\033[32m"   # green
R = "\033[31m"   # red
Y = "\033[33m"   # yellow
C = "\033[36m"   # cyan
B = "\033[1m"    # bold
D = "\033[2m"    # dim
X = "\033[0m"    # reset


def _version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("taskloop")
    except importlib.metadata.PackageNotFoundError:
        from taskloop import __version__
        return __version__


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="taskloop: tool-using agent loop with human approval",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {_version()}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.taskloop/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")

    run_parser = subparsers.add_parser("run", help="Run one task in the terminal, answering approvals interactively")
    run_parser.add_argument("request", help="What the agent should do")
    run_parser.add_argument("--system", default="", help="System prompt")
    run_parser.add_argument("--max-turns", type=int, default=None, help="Override agent_max_turns")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Auto-approve sensitive (not dangerous) calls")

    subparsers.add_parser("status", help="Check provider and server status")
    subparsers.add_parser("providers", help="List known model providers")

    args = parser.parse_args(argv)

    # Initialize config globally with the provided path (if any)
    from taskloop.engine import config as _cfg_module
    cfg = _cfg_module.get_config(args.config)

    from taskloop.logger import setup_logging
    # The interactive `run` command prints its own transcript to stdout
    setup_logging(cfg.log_file, console=args.command != "run", audit_file=cfg.audit_log_file or None)

    if args.command == "serve":
        _run_serve(args)
    elif args.command == "run":
        _run_task(args)
    elif args.command == "status":
        _run_status(args)
    elif args.command == "providers":
        _run_providers(args)
    else:
        parser.print_help()
        sys.exit(1)


def _run_serve(args) -> None:
    """Start the API server."""
    import os
    from taskloop.engine import config as _cfg_module

    # Set env vars BEFORE resetting the singleton so they are picked up
    if args.host:
        os.environ["TASKLOOP_SERVER_HOST"] = args.host
    if args.port:
        os.environ["TASKLOOP_SERVER_PORT"] = str(args.port)
    if args.host or args.port:
        _cfg_module.reset_config()
        _cfg_module.get_config(args.config)

    from taskloop.engine.server import run_server
    run_server()


def _run_task(args) -> None:
    import asyncio

    from taskloop.engine.agent import AgentLoop, EventType, PermissionGate, ToolRegistry
    from taskloop.engine.agent.registry import load_tool_modules
    from taskloop.engine.config import get_config
    from taskloop.engine.keystore import EnvKeyStore
    from taskloop.engine.llm import ModelClient

    cfg = get_config()

    async def drive() -> int:
        registry = ToolRegistry(default_timeout=cfg.tool_timeout)
        load_tool_modules(registry, cfg.tool_modules)
        client = ModelClient(cfg, keys=EnvKeyStore())
        gate = PermissionGate(
            registry,
            auto_approve_sensitive=cfg.auto_approve_sensitive or args.yes,
            overrides=cfg.permission_overrides,
        )
        agent = AgentLoop(client, registry, gate=gate, config=cfg)
        task = agent.create_task(args.request, system_prompt=args.system, max_turns=args.max_turns)

        print(f"{D}task {task.id} | {cfg.provider}:{cfg.model} | {len(registry)} tools{X}")
        streamed = False
        try:
            async for event in agent.run(task):
                data = event.data
                if event.type == EventType.TOKEN:
                    print(data.get("text", ""), end="", flush=True)
                    streamed = True
                elif event.type == EventType.TOOL_CALLS:
                    if streamed:
                        print()
                        streamed = False
                elif event.type == EventType.APPROVAL_REQUEST:
                    approved = await _ask_approval(data)
                    if not agent.broker.resolve(data["request_id"], approved):
                        print(f"  {Y}approval expired before your answer{X}")
                elif event.type == EventType.TOOL_START:
                    print(f"  {C}> {data['tool']}{X} {D}{data.get('arguments')}{X}")
                elif event.type == EventType.TOOL_END:
                    mark = f"{G}ok{X}" if data["success"] else f"{R}{data.get('error') or 'failed'}{X}"
                    print(f"  {C}< {data['tool']}{X} {mark} {D}{data['duration']}s{X}")
                elif event.type == EventType.TASK_COMPLETE:
                    if not streamed:
                        print(data.get("final_text", ""))
                    print(f"\n{G}done{X} {D}after {data.get('turns')} turn(s){X}")
                elif event.type == EventType.TASK_ERROR:
                    print(f"\n{R}error:{X} {data.get('error')}")
                    return 1
                elif event.type == EventType.TASK_CANCELLED:
                    print(f"\n{Y}cancelled{X}")
                    return 130
        except asyncio.CancelledError:
            agent.cancel(task.id)
            raise
        finally:
            await client.close()
        return 0

    sys.exit(asyncio.run(drive()))


async def _ask_approval(request: dict) -> bool:
    import asyncio

    call = request["tool_call"]
    tier = request["risk_tier"]
    color = R if tier == "dangerous" else Y
    print(f"\n  {color}{B}approval needed{X} [{color}{tier}{X}] {call['name']} {call['input']}")
    if request.get("reason"):
        print(f"  {D}{request['reason']}{X}")
    try:
        answer = await asyncio.to_thread(input, "  allow? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _run_status(args) -> None:
    """Check provider and server status."""
    import asyncio
    import httpx

    async def check():
        from taskloop.engine.config import get_config
        from taskloop.engine.keystore import EnvKeyStore
        from taskloop.engine.llm import ModelClient, get_provider
        from taskloop.engine.llm.catalog import ProviderKind
        from taskloop.engine.llm.ollama import list_ollama_models

        cfg = get_config()
        spec = get_provider(cfg.provider)
        ON = f"{G}● online{X}"
        OFF = f"{R}● offline{X}"

        print()
        print(f"  {B}taskloop{X} {D}v{_version()}{X}")
        print()

        client = ModelClient(cfg, keys=EnvKeyStore())
        try:
            provider_ok = await client.health_check()
        finally:
            await client.close()
        endpoint = cfg.endpoint or spec.endpoint
        print(f"  {B}Provider{X}      {ON if provider_ok else OFF}")
        print(f"  {D}Name:{X}         {spec.label} ({spec.id})")
        print(f"  {D}Endpoint:{X}     {endpoint}")
        print(f"  {D}Model:{X}        {Y}{cfg.model}{X}")
        if spec.requires_key and not EnvKeyStore().has_key(spec.id):
            print(f"  {D}Key:{X}          {R}missing{X}")
        if spec.kind == ProviderKind.OLLAMA and provider_ok:
            models = await list_ollama_models(endpoint)
            names = [m.get("model") or m.get("name") or "?" for m in models]
            if names:
                print(f"  {D}Available:{X}    " + "  ".join(
                    f"{G}{n}{X}" if n == cfg.model else f"{D}{n}{X}" for n in names
                ))

        print()
        server_url = f"http://{cfg.server_host}:{cfg.server_port}"
        server_status = OFF
        try:
            async with httpx.AsyncClient(timeout=5.0) as http:
                resp = await http.get(f"{server_url}/api/status")
                if resp.status_code == 200:
                    server_status = ON
        except httpx.HTTPError:
            pass
        print(f"  {B}Server{X}        {server_status}")
        print(f"  {D}Endpoint:{X}     {server_url}")
        print()

    asyncio.run(check())


def _run_providers(args) -> None:
    from taskloop.engine.config import get_config
    from taskloop.engine.keystore import EnvKeyStore
    from taskloop.engine.llm import PROVIDERS

    cfg = get_config()
    keys = EnvKeyStore()
    print()
    for spec in PROVIDERS.values():
        active = f"{G}*{X}" if spec.id == cfg.provider else " "
        if not spec.requires_key:
            key = f"{D}no key{X}"
        elif keys.has_key(spec.id):
            key = f"{G}key set{X}"
        else:
            key = f"{R}no key{X}"
        print(f" {active} {B}{spec.id:<11}{X} {spec.label:<22} {D}{spec.kind:<10}{X} {key}  {D}{spec.endpoint}{X}")
    print()


if __name__ == "__main__":
    main()
