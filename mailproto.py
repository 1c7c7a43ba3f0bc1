# mailproto.py
import base64
from typing import Optional

STATUS_OK = "ok"
STATUS_ERR = "err"
EMPTY_TOKEN = '""'

_WIRE_ESCAPES = {"\\": "\\", '"': '"', "n": "\n"}
_ATOM_STOP = set('()"') | set(" \t\r\n")


class ProtocolError(Exception):
    """Reply from the server does not follow the wire format."""


class Atom(str):
    """Bare (unquoted) token from a reply, e.g. a message id."""


def to_wire(text: str) -> str:
    # order matters: backslashes first or the other escapes get doubled
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def from_wire(wire: str) -> str:
    out = []
    i = 0
    while i < len(wire):
        ch = wire[i]
        if ch == "\\" and i + 1 < len(wire) and wire[i + 1] in _WIRE_ESCAPES:
            out.append(_WIRE_ESCAPES[wire[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def quote(text: str) -> str:
    return '"' + to_wire(text) + '"'


def encode_password(password: str) -> str:
    # argv bytes that are not UTF-8 arrive surrogate-escaped; send them as-is
    return base64.b64encode(password.encode("utf-8", "surrogateescape")).decode("ascii")


# Field renderers. None means the argument cannot go on the wire.

def _text(arg: str) -> str:
    return quote(arg)


def _password(arg: str) -> str:
    # base64 output never needs escaping
    return '"' + encode_password(arg) + '"'


def _bare(arg: str) -> Optional[str]:
    if not arg or any(ch in _ATOM_STOP for ch in arg):
        return None
    return arg


# name -> (needs session token, renderer per positional argument)
COMMANDS = {
    "register": (False, (_text, _password)),
    "login":    (False, (_text, _password)),
    "list":     (True, ()),
    "send":     (True, (_text, _text, _text)),
    "fetch":    (True, (_bare,)),
    "logout":   (True, ()),
}


def encode(command: str, args, token: str = EMPTY_TOKEN) -> str:
    """
    Build the request for one command.

        encode("list", [], '"abc"')          -> (list "abc")
        encode("login", ["bob", "pw"])       -> (login "bob" "cHc=")

    Returns "" for an unknown command, a wrong number of arguments or an
    argument that cannot be sent as a bare token.
    """
    spec = COMMANDS.get(command)
    if spec is None:
        return ""

    needs_token, renderers = spec
    if len(args) != len(renderers):
        return ""

    fields = [token or EMPTY_TOKEN] if needs_token else []
    for render, arg in zip(renderers, args):
        field = render(arg)
        if field is None:
            return ""
        fields.append(field)

    return "(" + " ".join([command] + fields) + ")"


def tokenize(text: str):
    """
    Yield (kind, value, pos) tuples. kind is one of "(", ")", "string", "atom".
    Escapes inside strings are resolved here, so a quote or newline that was
    escaped in a field never ends the field.
    """
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in " \t\r\n":
            i += 1
        elif ch in "()":
            yield ch, ch, i
            i += 1
        elif ch == '"':
            start = i
            i += 1
            while i < n and text[i] != '"':
                # skip the escaped character, whatever it is
                i += 2 if text[i] == "\\" else 1
            if i >= n:
                raise ProtocolError(f"unterminated string at offset {start}")
            yield "string", from_wire(text[start + 1:i]), start
            i += 1
        else:
            start = i
            while i < n and text[i] not in _ATOM_STOP:
                i += 1
            yield "atom", Atom(text[start:i]), start


def _parse_group(tokens, opened_at):
    items = []
    for kind, value, pos in tokens:
        if kind == ")":
            return items
        if kind == "(":
            items.append(_parse_group(tokens, pos))
        else:
            items.append(value)
    raise ProtocolError(f"unbalanced parenthesis at offset {opened_at}")


def parse(text: str):
    """
    message := "(" status item* ")"
    item    := string | atom | "(" item* ")"

    Returns (status, items) where items is a list of str, Atom and nested lists.
    """
    tokens = tokenize(text)

    first = next(tokens, None)
    if first is None or first[0] != "(" or first[2] != 0:
        raise ProtocolError("reply does not start with '('")

    # the status must be glued to the paren: "(ok " or "(ok)"
    status = next(tokens, None)
    if status is None or status[0] != "atom" or status[1] not in (STATUS_OK, STATUS_ERR) \
            or status[2] != 1 or text[1 + len(status[1]):][:1] not in (" ", ")"):
        raise ProtocolError(f"unknown reply status in {text[:32]!r}")

    items = _parse_group(tokens, first[2])

    extra = next(tokens, None)
    if extra is not None:
        raise ProtocolError(f"trailing data at offset {extra[2]}")

    return str(status[1]), items


def flatten(items) -> list:
    leaves = []
    for item in items:
        if isinstance(item, list):
            leaves.extend(flatten(item))
        else:
            leaves.append(item)
    return leaves


def _list_records(items):
    # nested form: (ok ((1 "from" "subject") (2 "from" "subject")))
    groups = None
    if len(items) == 1 and isinstance(items[0], list) and all(isinstance(g, list) for g in items[0]):
        groups = items[0]
    elif items and all(isinstance(item, list) for item in items):
        groups = items

    if groups is not None:
        records = []
        for number, group in enumerate(groups, start=1):
            leaves = flatten(group)
            if len(leaves) not in (2, 3):
                raise ProtocolError(f"list record {number} has {len(leaves)} fields")
            msg_id = leaves[0] if len(leaves) == 3 else str(number)
            records.append((str(msg_id), leaves[-2], leaves[-1]))
        return records

    # flat form: (ok "" "alice" "subj1" "bob" "subj2")
    rest = flatten(items)[1:]
    if len(rest) % 2:
        raise ProtocolError("list reply has an unpaired field")
    return [
        (str(number), rest[i], rest[i + 1])
        for number, i in enumerate(range(0, len(rest), 2), start=1)
    ]


class Response:
    def __init__(self, status, items, fields, records):
        self.status = status
        self.items = items
        self.fields = fields
        self.records = records

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def __repr__(self):
        return f"<Response {self.status} {self.fields!r}>"


def decode(data, command: str) -> Response:
    """
    Decode a reply for the command that was sent.

    list  -> records of (id, sender, subject)
    fetch -> one record (sender, subject, body)
    login -> last field is the session token, so at least one is required
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"reply is not valid UTF-8: {e}") from e

    status, items = parse(data)
    fields = flatten(items)
    records = []

    if status == STATUS_OK:
        if command == "list":
            records = _list_records(items)
        elif command == "fetch":
            if len(fields) < 3:
                raise ProtocolError(f"fetch reply has {len(fields)} fields, expected 3")
            records = [(fields[0], fields[1], fields[2])]
        elif command == "login" and not fields:
            raise ProtocolError("login reply carries no session token")

    return Response(status, items, fields, records)
