import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from conversation_history.app_config import load_json_config, parse_history_config, resolve_runtime_env
from conversation_history.bootstrap import HistoryRuntime, bootstrap_runtime
from conversation_history.compaction import estimate_tokens
from conversation_history.history import SessionNotFoundError, prune_sessions
from conversation_history.services.session_controller import SessionController

USAGE = """\
usage: python -m conversation_history <command> [args]

commands:
  list                          list sessions, most recently updated first
  show <session-id>             print a session summary and its messages
  resume <session-id> [limit]   print the resume window under a token limit
  title <session-id> <title>    rename a session
  delete <session-id>           delete a session
  prune                         apply MaxSessions / RetentionDays
"""


async def run_command(runtime: HistoryRuntime, argv: list[str], *, token_limit: int) -> int:
    controller = SessionController(line_prefix="  ")
    history = runtime.history
    if not argv:
        print(USAGE, end="")
        return 2

    command, args = argv[0], argv[1:]

    if command == "list":
        sessions = await history.list_sessions()
        if not sessions:
            print("No sessions.")
        for session in sessions:
            print(controller.format_session_list_entry(session))
        return 0

    if command == "show" and len(args) == 1:
        metadata = await history.get_metadata(args[0])
        messages = await history.get_messages(args[0])
        for line in controller.format_resumed_summary_lines(history.build_session_summary(metadata, messages)):
            print(line)
        for message in messages:
            print(controller.format_message_line(message))
        return 0

    if command == "resume" and len(args) in (1, 2):
        limit = int(args[1]) if len(args) == 2 else token_limit
        window = await runtime.recovery.load_session_with_context_optimization(
            args[0],
            limit,
            estimate_tokens,
            runtime.compressor,
        )
        print(f"Resume window: {len(window)} messages, ~{estimate_tokens(window):,} tokens (limit {limit:,})")
        for message in window:
            print(controller.format_message_line(message))
        return 0

    if command == "title" and len(args) >= 2:
        metadata = await history.update_session_title(args[0], " ".join(args[1:]))
        print(controller.format_session_list_entry(metadata))
        return 0

    if command == "delete" and len(args) == 1:
        await history.delete_session(args[0])
        print(f"Deleted {args[0]}")
        return 0

    if command == "prune" and not args:
        deleted = await prune_sessions(
            history,
            max_sessions=history.config.max_sessions,
            retention_days=history.config.retention_days,
        )
        print(f"Pruned {len(deleted)} sessions.")
        return 0

    print(USAGE, end="")
    return 2


async def main() -> int:
    load_dotenv()

    config = parse_history_config(load_json_config())
    runtime = bootstrap_runtime(config, resolve_runtime_env(config.summary_provider))

    try:
        return await run_command(runtime, sys.argv[1:], token_limit=config.token_limit)
    except SessionNotFoundError as ex:
        logger.error(str(ex))
        return 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
