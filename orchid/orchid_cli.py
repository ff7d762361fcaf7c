import argparse
import asyncio
import json
import logging
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from orchid.orchid_config import RunOptions, parse_positive_int
from orchid.orchid_errors import OrchidError
from orchid.orchid_printer import Printer
from orchid.orchid_provider import PROVIDER_NAMES
from orchid.orchid_runtime import ScriptRunner
from orchid.orchid_transformer import FrontEnd, ast_to_data


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="orchid", description="Run Orchid agent scripts")
    parser.add_argument("target", help="'run' followed by a script, or a script path")
    parser.add_argument("script", nargs="?", help="Script path when the first argument is 'run'")
    parser.add_argument("--parse", action="store_true", help="Print the AST as JSON and exit")
    parser.add_argument("--lex", action="store_true", help="Print the token stream and exit")
    parser.add_argument("--provider", choices=PROVIDER_NAMES, default="console")
    parser.add_argument("--model", help="Model id for the llm provider (default: $ORCHID_MODEL)")
    parser.add_argument("--sandbox", action="store_true", default=None,
                        help="Rate-limit and sanitise provider requests")
    parser.add_argument("--max-requests", help="Sandbox request cap (default: 50)")
    parser.add_argument("--config", help="Tool-server configuration file")
    parser.add_argument("--trace", action="store_true", help="Debug logging and tracebacks")
    args = parser.parse_args(argv)
    if args.target == "run":
        if not args.script:
            parser.error("run needs a script path")
        args.file = args.script
    elif args.script:
        parser.error(f"unexpected argument {args.script!r}")
    else:
        args.file = args.target
    return args


def _front_end_only(args, source: str) -> int:
    front_end = FrontEnd()
    try:
        if args.lex:
            for tok in front_end.lex(source):
                print(f"{tok.line}:{tok.column}\t{tok.type}\t{str(tok)!r}")
        else:
            print(json.dumps(ast_to_data(front_end.parse(source)), indent=2))
    except OrchidError as e:
        print(str(e), file=sys.stderr)
        return 1
    return 0


async def run_script_file(args) -> int:
    """Run an Orchid script file and return the process exit status."""
    p = Path(args.file)
    try:
        source = p.read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e.strerror or e}", file=sys.stderr)
        return 1

    if args.parse or args.lex:
        return _front_end_only(args, source)

    try:
        options = RunOptions.from_env(
            provider=args.provider,
            model=args.model,
            sandbox=args.sandbox,
            max_requests=parse_positive_int(args.max_requests, "--max-requests") if args.max_requests else None,
            config_path=args.config,
            trace=args.trace,
            script_dir=str(p.resolve().parent),
        )
    except OrchidError as e:
        print(str(e), file=sys.stderr)
        return 1
    if options.sandbox:
        print(f"[sandbox] rate limit {options.max_requests} requests, prompt sanitisation on", file=sys.stderr)

    def show(effect):
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''), flush=True)

    runner = ScriptRunner(options, on_effect=show)
    result = await runner.handle_script(source, p)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        if args.trace and result.error is not None:
            traceback.print_exception(result.error, file=sys.stderr)
        return 1
    if result.value is not None:
        print(f"=> {Printer().pformat(result.value)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.trace else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return asyncio.run(run_script_file(args))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
