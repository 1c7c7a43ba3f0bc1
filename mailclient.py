# mailclient.py
import argparse
import os
import socket
import sys

from mailproto import (
    COMMANDS,
    EMPTY_TOKEN,
    ProtocolError,
    decode,
    encode,
    quote,
)

HOST = os.environ.get("ISA_ADDR", "127.0.0.1")
PORT = int(os.environ.get("ISA_PORT", "32323"))
TOKEN_FILE = os.environ.get("ISA_TOKEN_FILE", "login-token.txt")

MAX_FRAME_BYTES = 32 * 1024
RECV_BYTES = 4096

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONNECT = 2
EXIT_TRANSPORT = 3
EXIT_PROTOCOL = 4

USAGE = """\
usage: mailclient [ <option> ... ] <command> [<args>] ...

<option> is one of

  -a <addr>, --address <addr>
     Server hostname or address to connect to
  -p <port>, --port <port>
     Server port to connect to
  -v, --verbose
     Print the request and the raw reply to stderr
  --help, -h
     Show this help
  --
     Do not treat any remaining argument as a switch (at this level)

Supported commands:
  register <username> <password>
  login <username> <password>
  list
  send <recipient> <subject> <body>
  fetch <id>
  logout
"""


class UsageError(Exception):
    pass


class ConnectError(Exception):
    pass


class TransportError(Exception):
    pass


class TokenStoreError(Exception):
    pass


class MemoryTokenStore:
    def __init__(self, token: str = ""):
        self.token = token

    def get(self) -> str:
        return self.token or EMPTY_TOKEN

    def set(self, token: str) -> None:
        self.token = token

    def clear(self) -> None:
        self.token = ""


class FileTokenStore:
    """
    Session token kept in a local file between invocations.
    The file holds the token in its quoted wire form, e.g. "a1b2c3".
    """
    def __init__(self, path: str = TOKEN_FILE):
        self.path = path

    def get(self) -> str:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                words = f.read().split()
        except (OSError, UnicodeDecodeError):
            return EMPTY_TOKEN
        return words[0] if words else EMPTY_TOKEN

    def set(self, token: str) -> None:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                f.write(token)
        except OSError as e:
            raise TokenStoreError(f"could not save session token to {self.path}: {e.strerror}") from e

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise TokenStoreError(f"could not remove session token {self.path}: {e.strerror}") from e


class ClientConfig:
    def __init__(self, host: str = HOST, port: int = PORT, token_file: str = TOKEN_FILE,
                 verbose: bool = False):
        self.host = host
        self.port = port
        self.token_file = token_file
        self.verbose = verbose

    def __repr__(self):
        return f"<ClientConfig {self.host}:{self.port} token_file={self.token_file}>"


class ClientConn:
    """
    One request, one reply. The protocol has no length prefix or terminator:
    the reply ends when the server closes its side of the connection.
    """
    def __init__(self, sock, max_frame: int = MAX_FRAME_BYTES, recv_size: int = RECV_BYTES):
        self.sock = sock
        self.max_frame = max_frame
        self.recv_size = recv_size

    def send_all(self, data: bytes) -> None:
        sent = 0
        while sent < len(data):
            chunk = data[sent:sent + self.max_frame]
            try:
                n = self.sock.send(chunk)
            except OSError as e:
                raise TransportError(f"send failed: {e}") from e
            if not n:
                raise TransportError(f"send made no progress after {sent} of {len(data)} bytes")
            sent += n

    def recv_until_close(self) -> bytes:
        buf = bytearray()
        while True:
            try:
                chunk = self.sock.recv(self.recv_size)
            except OSError as e:
                raise TransportError(f"recv failed: {e}") from e
            if not chunk:
                return bytes(buf)
            buf += chunk

    def close(self):
        try:
            self.sock.close()
        except OSError:
            pass


def exchange(sock, message: str) -> bytes:
    """Send the whole message, then read until the peer closes."""
    conn = ClientConn(sock)
    try:
        conn.send_all(message.encode("utf-8", "surrogateescape"))
        return conn.recv_until_close()
    finally:
        conn.close()


def connect(host: str, port: int):
    try:
        return socket.create_connection((host, port))
    except socket.gaierror as e:
        raise ConnectError(f"could not resolve {host}: {e.strerror}") from e
    except OSError as e:
        raise ConnectError(f"could not connect to {host}:{port}: {e.strerror or e}") from e


def format_list(records) -> str:
    lines = ["SUCCESS:"]
    for msg_id, sender, subject in records:
        lines.append(f"{msg_id}:")
        lines.append(f"  From: {sender}")
        lines.append(f"  Subject: {subject}")
    return "\n".join(lines)


def format_fetch(record) -> str:
    sender, subject, body = record
    return f"SUCCESS:\n\nFrom: {sender}\nSubject: {subject}\n\n{body}"


def resolve(response, command: str, store):
    """
    Turn a decoded reply into printable text and update the token store.

    Returns (text, store_error). store_error is a message when saving or
    removing the token failed; the reply itself is still reported.
    """
    if not response.ok:
        text = "ERROR:"
        if response.fields:
            text += " " + response.fields[0]
        return text, None

    store_error = None
    try:
        if command == "login":
            store.set(quote(response.fields[-1]))
        elif command == "logout":
            store.clear()
    except TokenStoreError as e:
        store_error = str(e)

    if command == "list":
        return format_list(response.records), store_error
    if command == "fetch":
        return format_fetch(response.records[0]), store_error

    text = "SUCCESS:"
    if response.fields:
        text += " " + response.fields[0]
    return text, store_error


def run(config: ClientConfig, command: str, args, store=None, connector=None) -> int:
    if store is None:
        store = FileTokenStore(config.token_file)
    if connector is None:
        connector = connect

    token = store.get() if COMMANDS.get(command, (False,))[0] else EMPTY_TOKEN
    message = encode(command, args, token)
    if not message:
        raise UsageError("Invalid command. See --help.")

    if config.verbose:
        print(f"{config.host}:{config.port} <- {message}", file=sys.stderr)

    sock = connector(config.host, config.port)
    raw = exchange(sock, message)

    if config.verbose:
        print(f"{config.host}:{config.port} -> {raw!r}", file=sys.stderr)

    response = decode(raw, command)
    text, store_error = resolve(response, command, store)
    print(text)
    if store_error:
        print(f"ERROR: {store_error}", file=sys.stderr)
    return EXIT_OK


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(f"{message}. See --help.")

    def print_help(self, file=None):
        print(USAGE, end="", file=file)


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port {value!r}")
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port {port} out of range")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="mailclient")
    parser.add_argument("-a", "--address", default=HOST)
    parser.add_argument("-p", "--port", type=_port, default=PORT)
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("command", nargs="?")
    parser.add_argument("args", nargs="*")
    return parser


def main(argv=None) -> int:
    try:
        # options may follow the command, as with getopt permutation
        opts = build_parser().parse_intermixed_args(argv)
        if opts.command is None:
            raise UsageError("Not enough arguments. See --help.")
        args = opts.args
        if args and args[0] == "--":
            args = args[1:]
        config = ClientConfig(host=opts.address, port=opts.port, verbose=opts.verbose)
        return run(config, opts.command, args)
    except UsageError as e:
        print(e, file=sys.stderr)
        return EXIT_USAGE
    except ConnectError as e:
        print(f"Client failed to connect to the server: {e}", file=sys.stderr)
        return EXIT_CONNECT
    except TransportError as e:
        print(f"Connection lost: {e}", file=sys.stderr)
        return EXIT_TRANSPORT
    except ProtocolError as e:
        print(f"Malformed reply from server: {e}", file=sys.stderr)
        return EXIT_PROTOCOL


if __name__ == "__main__":
    sys.exit(main())
