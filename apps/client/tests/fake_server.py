"""Stub language server used by the lifecycle tests.

Speaks Content-Length framed JSON-RPC over stdio (``--stdio``), a loopback
socket (``--socket=<port>``) or a Unix socket (``--pipe=<path>``).

Behaviour flags:
    --exit-immediately      exit with status 2 before reading anything
    --hang                  never answer ``initialize``
    --crash-on=<method>     exit with --crash-code (default 3) on that message
    --ignore-exit           keep running after ``exit``
    --garbage-on-open       send malformed frames before answering ``didOpen``
"""

import json
import os
import socket
import sys
import time


def read_message(stream):
    headers = {}
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.decode("ascii").strip()
        if not line:
            if headers:
                break
            continue
        key, _, value = line.partition(":")
        headers[key.strip().lower()] = value.strip()
    length = int(headers["content-length"])
    body = stream.read(length)
    if len(body) < length:
        return None
    return json.loads(body)


def write_message(stream, message):
    payload = json.dumps(message).encode("utf-8")
    stream.write(b"Content-Length: %d\r\n\r\n" % len(payload) + payload)
    stream.flush()


GARBAGE_FRAMES = [
    b"Content-Length: 1\r\n\r\n5",
    b"Content-Length: 5\r\n\r\n[1,2]",
    b"Content-Length: 5\r\n\r\n{nope",
    b"Content-Length: -1\r\n\r\n",
    b"Content-Length: abc\r\n\r\n",
    b"X-Unknown: 1\r\n\r\n",
]


def write_garbage(stream):
    for frame in GARBAGE_FRAMES:
        stream.write(frame)
    # well-formed frame whose params break the client's handler
    write_message(stream, {
        "jsonrpc": "2.0",
        "method": "textDocument/publishDiagnostics",
        "params": "not-an-object",
    })
    stream.flush()


def parse_args(argv):
    opts = {"crash_code": 3}
    for arg in argv:
        key, _, value = arg.lstrip("-").partition("=")
        opts[key.replace("-", "_")] = value or True
    opts["crash_code"] = int(opts["crash_code"])
    return opts


def open_channel(opts):
    if "socket" in opts:
        sock = socket.create_connection(("127.0.0.1", int(opts["socket"])))
        return sock.makefile("rb"), sock.makefile("wb")
    if "pipe" in opts:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.connect(opts["pipe"])
        return sock.makefile("rb"), sock.makefile("wb")
    return sys.stdin.buffer, sys.stdout.buffer


def main():
    opts = parse_args(sys.argv[1:])
    if opts.get("exit_immediately"):
        sys.exit(2)

    rfile, wfile = open_channel(opts)
    sys.stderr.write("fake server pid=%d\n" % os.getpid())
    sys.stderr.flush()

    while True:
        message = read_message(rfile)
        if message is None:
            if opts.get("ignore_exit"):
                time.sleep(60)
            sys.exit(0)
        method = message.get("method")

        if method == opts.get("crash_on"):
            sys.stderr.write("crashing on %s\n" % method)
            sys.stderr.flush()
            os._exit(opts["crash_code"])

        if method == "initialize":
            if opts.get("hang"):
                continue
            write_message(wfile, {
                "jsonrpc": "2.0",
                "id": message["id"],
                "result": {
                    "capabilities": {"textDocumentSync": 1},
                    "serverInfo": {"name": "fake-wgsl"},
                },
            })
        elif method == "initialized":
            write_message(wfile, {
                "jsonrpc": "2.0",
                "method": "window/logMessage",
                "params": {"type": 3, "message": "fake server ready"},
            })
        elif method == "shutdown":
            write_message(wfile, {"jsonrpc": "2.0", "id": message["id"], "result": None})
        elif method == "exit":
            if not opts.get("ignore_exit"):
                sys.exit(0)
        elif method == "textDocument/didOpen":
            uri = message["params"]["textDocument"]["uri"]
            diagnostics = []
            if opts.get("garbage_on_open"):
                write_garbage(wfile)
                diagnostics = [{"message": "after garbage", "severity": 2}]
            write_message(wfile, {
                "jsonrpc": "2.0",
                "method": "textDocument/publishDiagnostics",
                "params": {"uri": uri, "diagnostics": diagnostics},
            })


if __name__ == "__main__":
    main()
