import argparse
import sys

from chatmark import create_app
from chatmark.utils.markdown import render_markdown, strip_markdown


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatmark",
        description="Render chat markdown to HTML, strip it to text, or serve the chat API.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    render_cmd = sub.add_parser("render", help="Render markdown to HTML.")
    render_cmd.add_argument("file", nargs="?", help="Input file (stdin when omitted).")

    strip_cmd = sub.add_parser("strip", help="Strip markdown to plain text.")
    strip_cmd.add_argument("file", nargs="?", help="Input file (stdin when omitted).")

    serve_cmd = sub.add_parser("serve", help="Run the chat API server.")
    serve_cmd.add_argument("--root", help="Override the application root directory.")
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Hostname to bind the server to.")
    serve_cmd.add_argument("--port", type=int, default=5000, help="Port for the Flask server.")
    serve_cmd.add_argument("--debug", action="store_true", help="Enable Flask debug mode.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.command == "serve":
        _serve(args)
        return 0

    text = _read_input(args.file)
    if args.command == "render":
        output = render_markdown(text)
    else:
        output = strip_markdown(text)
    sys.stdout.write(output)
    if output and not output.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def _read_input(path: str | None) -> str:
    if not path or path == "-":
        return sys.stdin.read()
    with open(path, encoding="utf-8") as f:
        return f.read()


def _serve(args: argparse.Namespace) -> None:
    app = create_app(cli_root=args.root)
    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        use_reloader=args.debug,
        threaded=True,
    )


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
