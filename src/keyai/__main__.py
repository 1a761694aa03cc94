"""CLI entry point for KeyAI.

Usage:
    keyai run                          # capture in the foreground until Ctrl-C
    keyai status                       # database path, counts, features
    keyai health                       # database / search / agent status
    keyai search <query> [--mode text|semantic|hybrid] [--limit N] [--threshold X] [--json]
    keyai suggest <partial> [--limit N]
    keyai clear --yes                  # delete all captured data
    keyai vacuum                       # reclaim free space
    keyai optimize [--rebuild]         # optimize (or rebuild) the search index
    keyai export <path> [--from TS] [--to TS]
    keyai patterns list
    keyai patterns add <name> <regex> [--category C]
    keyai patterns remove <name>
    keyai patterns enable <name>

    python -m keyai status             # same
"""

import sys

from keyai.cli import (
    cmd_clear,
    cmd_export,
    cmd_health,
    cmd_optimize,
    cmd_patterns_add,
    cmd_patterns_enable,
    cmd_patterns_list,
    cmd_patterns_remove,
    cmd_run,
    cmd_search,
    cmd_status,
    cmd_suggest,
    cmd_vacuum,
)

USAGE = "Usage: keyai <run|status|health|search|suggest|clear|vacuum|optimize|export|patterns>\n"

# Flags that take a value; everything else starting with -- is a switch.
_VALUE_FLAGS = {"--mode", "--limit", "--threshold", "--category", "--from", "--to"}


def parse_args(argv: list[str]) -> tuple[list[str], dict[str, str | bool]]:
    """Split argv into positionals and ``--flag [value]`` options.

    Raises:
        ValueError: If a value flag is missing its value.
    """
    positionals: list[str] = []
    options: dict[str, str | bool] = {}
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in _VALUE_FLAGS:
            if i + 1 >= len(argv):
                raise ValueError(f"{arg} needs a value")
            options[arg] = argv[i + 1]
            i += 2
            continue
        if arg.startswith("--"):
            options[arg] = True
        else:
            positionals.append(arg)
        i += 1
    return positionals, options


def dispatch(argv: list[str]) -> int:
    """Run the command in ``argv`` (without the program name) and return its exit code."""
    if not argv:
        sys.stderr.write(USAGE)
        return 1

    command = argv[0].strip().lower()
    if command in ("-h", "--help"):
        sys.stderr.write(USAGE)
        return 0

    try:
        args, opts = parse_args(argv[1:])
        limit = int(opts["--limit"]) if "--limit" in opts else None
        threshold = float(opts["--threshold"]) if "--threshold" in opts else None
        start = int(opts.get("--from", 0))
        end = int(opts["--to"]) if "--to" in opts else None
    except ValueError as e:
        sys.stderr.write(f"Invalid arguments: {e}\n{USAGE}")
        return 1

    if command == "run":
        return cmd_run()
    if command == "status":
        return cmd_status()
    if command == "health":
        return cmd_health()
    if command == "search":
        if not args:
            sys.stderr.write("Usage: keyai search <query> [--mode text|semantic|hybrid] [--limit N]\n")
            return 1
        return cmd_search(
            " ".join(args),
            mode=str(opts.get("--mode", "text")),
            limit=limit,
            threshold=threshold,
            as_json=bool(opts.get("--json", False)),
        )
    if command == "suggest":
        if not args:
            sys.stderr.write("Usage: keyai suggest <partial> [--limit N]\n")
            return 1
        return cmd_suggest(" ".join(args), limit=limit or 10)
    if command == "clear":
        return cmd_clear(confirm=bool(opts.get("--yes", False)))
    if command == "vacuum":
        return cmd_vacuum()
    if command == "optimize":
        return cmd_optimize(rebuild=bool(opts.get("--rebuild", False)))
    if command == "export":
        if not args:
            sys.stderr.write("Usage: keyai export <path> [--from TS] [--to TS]\n")
            return 1
        return cmd_export(args[0], start=start, end=end)
    if command == "patterns":
        return _dispatch_patterns(args, opts)

    sys.stderr.write(f"Unknown command: {command}. {USAGE}")
    return 1


def _dispatch_patterns(args: list[str], opts: dict[str, str | bool]) -> int:
    action = args[0] if args else "list"
    if action == "list":
        return cmd_patterns_list()
    if action == "add" and len(args) == 3:
        return cmd_patterns_add(args[1], args[2], category=str(opts.get("--category", "custom")))
    if action == "remove" and len(args) == 2:
        return cmd_patterns_remove(args[1])
    if action == "enable" and len(args) == 2:
        return cmd_patterns_enable(args[1])
    sys.stderr.write("Usage: keyai patterns <list|add <name> <regex>|remove <name>|enable <name>>\n")
    return 1


def main() -> None:
    """Parse command from argv, dispatch to handler, exit with return code."""
    sys.exit(dispatch(sys.argv[1:]))


if __name__ == "__main__":
    main()
