"""
Command-line interface for PicoClaw.
"""

import argparse
import asyncio
import logging
import sys

import structlog

from .config import Settings, get_settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="picoclaw",
        description="PicoClaw - a small personal AI assistant",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    agent_parser = subparsers.add_parser("agent", help="Talk to the agent")
    agent_parser.add_argument("-m", "--message", help="Send a single message and exit")
    agent_parser.add_argument("--session", default="cli:direct", help="Session key to use")

    subparsers.add_parser("sessions", help="List stored sessions")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)

    if args.command == "agent":
        try:
            asyncio.run(run_agent(settings, args.message, args.session))
        except KeyboardInterrupt:
            print("\nGoodbye!")
    elif args.command == "sessions":
        list_sessions(settings)
    elif args.command == "config":
        ok = show_config(settings, args.check)
        if not ok:
            sys.exit(1)
    else:
        parser.print_help()


async def run_agent(settings: Settings, message: str | None, session_key: str) -> None:
    """Run a single message or an interactive prompt against the agent."""
    from .agent import AgentLoop

    try:
        agent = AgentLoop.from_settings(settings)
    except ValueError as e:
        logger.error("Cannot start agent", error=str(e))
        sys.exit(1)

    try:
        if message:
            print(await agent.process_direct(message, session_key=session_key))
            return

        print("PicoClaw interactive mode (type 'exit' to quit)\n")
        while True:
            try:
                line = await asyncio.to_thread(input, "You: ")
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if line.lower() in ("exit", "quit"):
                break

            response = await agent.process_direct(line, session_key=session_key)
            print(f"\nPicoClaw: {response}\n")
    finally:
        await agent.shutdown()
        await agent.llm.aclose()


def list_sessions(settings: Settings) -> None:
    """List stored sessions."""
    from .agent import SessionStore

    store = SessionStore(settings.sessions_path)
    keys = store.keys()

    if not keys:
        print("No sessions found.")
        return

    print(f"\n{'Session':<40} {'Messages':<10} {'Updated':<25}")
    print("-" * 75)

    for key in sorted(keys):
        session = store.get_or_create(key)
        updated = session.updated_at.strftime("%Y-%m-%d %H:%M:%S")
        print(f"{key:<40} {len(session.messages):<10} {updated:<25}")


def show_config(settings: Settings, check: bool) -> bool:
    """Show current configuration. Returns False when the check finds errors."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== PicoClaw Configuration ===\n")

    print("Paths:")
    print(f"  Workspace: {settings.workspace_path}")
    print(f"  Sessions: {settings.sessions_path}")

    print("\nModel:")
    print(f"  Default Model: {settings.default_model}")
    print(f"  Max Tokens: {settings.max_tokens}")
    print(f"  Temperature: {settings.temperature}")
    print(f"  Max Tool Iterations: {settings.max_tool_iterations}")
    print(f"  Fallback Model: {settings.fallback_model or '(none)'}")

    print("\nLLM Providers:")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Gemini Key: {mask(settings.gemini_api_key)}")
    print(f"  Zhipu Key: {mask(settings.zhipu_api_key)}")
    print(f"  Groq Key: {mask(settings.groq_api_key)}")
    print(f"  Moonshot Key: {mask(settings.moonshot_api_key)}")
    print(f"  vLLM Base: {settings.vllm_api_base or '(not set)'}")

    print("\nCompaction:")
    print(f"  Enabled: {settings.compaction_enabled}")
    print(f"  Trigger: {settings.compaction_trigger_messages} messages")
    print(f"  Keep Recent: {settings.compaction_keep_recent}")

    if not check:
        return True

    print("\n=== Configuration Check ===\n")
    errors = []
    warnings = []

    try:
        primary = settings.get_llm_config()
        print(f"  Primary: {primary.provider} ({primary.base_url})")
    except ValueError as e:
        errors.append(str(e))

    if settings.fallback_model and settings.get_fallback_config() is None:
        warnings.append(f"Fallback model {settings.fallback_model} has no usable API key or base URL")

    if errors:
        print("Errors:")
        for e in errors:
            print(f"   - {e}")

    if warnings:
        print("Warnings:")
        for w in warnings:
            print(f"   - {w}")

    if not errors and not warnings:
        print("Configuration looks good!")
    elif not errors:
        print("\nConfiguration is valid (with warnings)")
    else:
        print("\nConfiguration has errors - fix them before starting")

    return not errors


if __name__ == "__main__":
    main()
