# tests.py
import contextlib
import io
import os
import socket
import tempfile
import threading
import unittest
from contextlib import closing
from unittest import mock

import mailclient
from mailclient import (
    ClientConfig,
    ClientConn,
    FileTokenStore,
    MemoryTokenStore,
    TokenStoreError,
    TransportError,
    exchange,
    resolve,
    run,
)
from mailproto import (
    Atom,
    ProtocolError,
    decode,
    encode,
    encode_password,
    flatten,
    from_wire,
    parse,
    to_wire,
)

HOST = "127.0.0.1"
ACCEPT_TIMEOUT_S = 5.0


# Finds an available port to use for testing
def pick_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind((HOST, 0))
        return s.getsockname()[1]


class FakeSocket:
    """
    Stands in for a connected socket. recv hands out at most recv_chunk bytes
    per call and b"" once the scripted reply is used up.
    """
    def __init__(self, reply: bytes = b"", recv_chunk: int = 4096, send_limit=None):
        self.reply = reply
        self.recv_chunk = recv_chunk
        self.send_limit = send_limit
        self.sent = []
        self.recv_calls = 0
        self.closed = False
        self.pos = 0

    def send(self, data: bytes) -> int:
        if self.send_limit is not None:
            data = data[:self.send_limit]
        self.sent.append(bytes(data))
        return len(data)

    def recv(self, n: int) -> bytes:
        self.recv_calls += 1
        size = min(n, self.recv_chunk)
        chunk = self.reply[self.pos:self.pos + size]
        self.pos += len(chunk)
        return chunk

    def close(self):
        self.closed = True


class BrokenSocket(FakeSocket):
    def __init__(self, fail_on: str):
        super().__init__()
        self.fail_on = fail_on

    def send(self, data):
        if self.fail_on == "send":
            raise ConnectionResetError("reset by peer")
        return super().send(data)

    def recv(self, n):
        if self.fail_on == "recv":
            raise ConnectionResetError("reset by peer")
        return super().recv(n)


class StalledSocket(FakeSocket):
    def send(self, data):
        return 0


class ScriptedServer(threading.Thread):
    """
    Accepts a single connection, records the request, answers with a fixed
    reply and closes, the way the mail server ends every exchange.
    """
    def __init__(self, reply: bytes):
        super().__init__(daemon=True)
        self.reply = reply
        self.request = b""
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.settimeout(ACCEPT_TIMEOUT_S)
        self.sock.bind((HOST, 0))
        self.sock.listen(1)
        self.port = self.sock.getsockname()[1]

    def run(self):
        try:
            conn, _ = self.sock.accept()
        except OSError:
            self.sock.close()
            return
        with conn:
            while not self.request.endswith(b")"):
                chunk = conn.recv(4096)
                if not chunk:
                    break
                self.request += chunk
            conn.sendall(self.reply)
        self.sock.close()


class FailingTokenStore(MemoryTokenStore):
    def set(self, token):
        raise TokenStoreError("disk full")

    def clear(self):
        raise TokenStoreError("permission denied")


# Escape codec
class EscapeCodecTests(unittest.TestCase):
    SAMPLES = [
        "",
        "plain text",
        "back\\slash",
        'say "hi"',
        "two\nlines",
        '\\"',
        "\\n is not a newline",
        '\\\\""\n\n\\',
        'mix \\ of " all\nthree\\"\n',
    ]

    def test_escape_order(self):
        self.assertEqual(to_wire('a\\b"c\nd'), 'a\\\\b\\"c\\nd')

    def test_round_trip(self):
        for text in self.SAMPLES:
            with self.subTest(text=text):
                self.assertEqual(from_wire(to_wire(text)), text)
                self.assertEqual(to_wire(from_wire(to_wire(text))), to_wire(text))

    def test_unknown_escape_kept(self):
        self.assertEqual(from_wire("a\\tb"), "a\\tb")
        self.assertEqual(from_wire("trailing\\"), "trailing\\")


# Message encoder
class EncodeTests(unittest.TestCase):
    def test_wrong_arity_is_empty(self):
        self.assertEqual(encode("send", ["a", "b"], '"tok"'), "")
        self.assertEqual(encode("login", ["bob"]), "")
        self.assertEqual(encode("list", ["extra"], '"tok"'), "")
        self.assertEqual(encode("logout", ["extra"], '"tok"'), "")

    def test_unknown_command_is_empty(self):
        self.assertEqual(encode("delete", ["1"], '"tok"'), "")

    def test_list_uses_stored_token(self):
        self.assertEqual(encode("list", [], '"tok"'), '(list "tok")')

    def test_missing_token_placeholder(self):
        self.assertEqual(encode("logout", [], '""'), '(logout "")')
        self.assertEqual(encode("logout", [], ""), '(logout "")')

    def test_login_and_register_encode_password(self):
        self.assertEqual(encode("login", ["bob", "pw"]), '(login "bob" "cHc=")')
        self.assertEqual(encode("register", ['b"ob', "pw"]), '(register "b\\"ob" "cHc=")')

    def test_password_any_bytes(self):
        self.assertEqual(encode_password('p"\\\nw'), "cCJcCnc=")

    def test_password_bytes_outside_utf8(self):
        # byte 0xE9 from a Latin-1 terminal reaches argv as "\udce9"
        self.assertEqual(encode_password("p\udce9w"), "cOl3")
        self.assertEqual(encode("login", ["bob", "p\udce9w"]), '(login "bob" "cOl3")')

    def test_send_escapes_text_fields(self):
        msg = encode("send", ['al"ice', "a\\b", "line1\nline2"], '"tok"')
        self.assertEqual(msg, '(send "tok" "al\\"ice" "a\\\\b" "line1\\nline2")')

    def test_fetch_id_is_bare(self):
        self.assertEqual(encode("fetch", ["3"], '"tok"'), '(fetch "tok" 3)')

    def test_fetch_id_must_be_single_token(self):
        self.assertEqual(encode("fetch", ["1 2"], '"tok"'), "")
        self.assertEqual(encode("fetch", ["1)"], '"tok"'), "")
        self.assertEqual(encode("fetch", [""], '"tok"'), "")


# Response decoder
class DecodeTests(unittest.TestCase):
    def test_list_flat(self):
        r = decode('(ok "" "alice" "subj1" "bob" "subj2")', "list")
        self.assertTrue(r.ok)
        self.assertEqual(r.records, [("1", "alice", "subj1"), ("2", "bob", "subj2")])

    def test_list_nested(self):
        r = decode('(ok ((1 "alice" "subj1") (7 "bob" "subj2")))', "list")
        self.assertEqual(r.records, [("1", "alice", "subj1"), ("7", "bob", "subj2")])

    def test_list_empty(self):
        self.assertEqual(decode("(ok ())", "list").records, [])
        self.assertEqual(decode("(ok)", "list").records, [])

    def test_list_group_size(self):
        for text in ['(ok ((1 "alice" "subj1" "extra")))', '(ok ((1 "alice" "s") ("x")))']:
            with self.subTest(text=text):
                with self.assertRaises(ProtocolError):
                    decode(text, "list")
        r = decode('(ok (("alice" "subj1")))', "list")
        self.assertEqual(r.records, [("1", "alice", "subj1")])

    def test_list_unpaired_field(self):
        with self.assertRaises(ProtocolError):
            decode('(ok "" "alice")', "list")

    def test_fetch_flat(self):
        r = decode('(ok "alice" "hello" "body text")', "fetch")
        self.assertEqual(r.records, [("alice", "hello", "body text")])

    def test_fetch_nested(self):
        r = decode('(ok ("alice" "hello" "two\\nlines"))', "fetch")
        self.assertEqual(r.records, [("alice", "hello", "two\nlines")])

    def test_fetch_too_few_fields(self):
        with self.assertRaises(ProtocolError):
            decode('(ok "alice" "hello")', "fetch")

    def test_escaped_delimiters_stay_in_field(self):
        r = decode('(ok "say \\"hi\\" (now)" "x\\ny")', "send")
        self.assertEqual(r.fields, ['say "hi" (now)', "x\ny"])

    def test_err_is_not_regrouped(self):
        r = decode('(err "unknown message id")', "fetch")
        self.assertFalse(r.ok)
        self.assertEqual(r.records, [])
        self.assertEqual(r.fields, ["unknown message id"])

    def test_bad_status(self):
        for text in ['(okay "x")', '("ok")', 'ok "x"', "", "(", "(maybe)"]:
            with self.subTest(text=text):
                with self.assertRaises(ProtocolError):
                    decode(text, "send")

    def test_malformed(self):
        for text in ['(ok "open', '(ok ("a")', '(ok "a") junk', '(ok "a"))']:
            with self.subTest(text=text):
                with self.assertRaises(ProtocolError):
                    decode(text, "send")

    def test_login_without_token(self):
        with self.assertRaises(ProtocolError):
            decode("(ok)", "login")

    def test_bytes_and_bad_utf8(self):
        self.assertEqual(decode('(ok "hé")'.encode("utf-8"), "send").fields, ["hé"])
        with self.assertRaises(ProtocolError):
            decode(b'(ok "\xff")', "send")

    def test_status_glued_to_paren(self):
        for text in ['( ok "x")', '(ok"x")', ' (ok "x")', '(\nerr "x")', "(ok"]:
            with self.subTest(text=text):
                with self.assertRaises(ProtocolError):
                    decode(text, "send")
        self.assertEqual(decode("(ok)", "logout").status, "ok")
        self.assertEqual(decode('(err "x")', "send").status, "err")

    def test_atoms_are_marked(self):
        status, items = parse('(ok (3 "x") "y")')
        self.assertEqual(status, "ok")
        self.assertIsInstance(items[0][0], Atom)
        self.assertNotIsInstance(items[1], Atom)
        self.assertEqual(flatten(items), ["3", "x", "y"])


# Transport exchange
class ExchangeTests(unittest.TestCase):
    REPLY = b'(ok ((1 "alice" "subj1") (2 "bob" "subj2")))'

    def test_one_byte_reads_match_single_read(self):
        whole = exchange(FakeSocket(self.REPLY, recv_chunk=len(self.REPLY)), '(list "t")')
        trickle_sock = FakeSocket(self.REPLY, recv_chunk=1)
        trickle = exchange(trickle_sock, '(list "t")')

        self.assertEqual(trickle, whole)
        self.assertEqual(trickle_sock.recv_calls, len(self.REPLY) + 1)
        self.assertEqual(decode(trickle, "list").records, decode(whole, "list").records)

    def test_send_loops_over_frames_and_partial_writes(self):
        sock = FakeSocket()
        conn = ClientConn(sock, max_frame=4)
        conn.send_all(b"0123456789")
        self.assertEqual([len(c) for c in sock.sent], [4, 4, 2])

        sock = FakeSocket(send_limit=3)
        ClientConn(sock, max_frame=4).send_all(b"0123456789")
        self.assertEqual(b"".join(sock.sent), b"0123456789")

    def test_full_buffer_read_continues(self):
        sock = FakeSocket(b"x" * 10, recv_chunk=4)
        self.assertEqual(ClientConn(sock, recv_size=4).recv_until_close(), b"x" * 10)

    def test_send_failure(self):
        sock = BrokenSocket("send")
        with self.assertRaises(TransportError):
            exchange(sock, "(list \"\")")
        self.assertTrue(sock.closed)

    def test_recv_failure(self):
        with self.assertRaises(TransportError):
            exchange(BrokenSocket("recv"), "(list \"\")")

    def test_no_progress(self):
        with self.assertRaises(TransportError):
            exchange(StalledSocket(), "(list \"\")")


# Session resolver
class SessionTests(unittest.TestCase):
    def test_token_lifecycle(self):
        store = MemoryTokenStore()
        self.assertEqual(store.get(), '""')

        text, err = resolve(decode('(ok "sometoken")', "login"), "login", store)
        self.assertEqual(text, "SUCCESS: sometoken")
        self.assertIsNone(err)
        self.assertEqual(store.get(), '"sometoken"')

        resolve(decode("(ok)", "logout"), "logout", store)
        self.assertEqual(store.get(), '""')

    def test_login_message_and_token(self):
        store = MemoryTokenStore()
        text, _ = resolve(decode('(ok "user logged in" "abc")', "login"), "login", store)
        self.assertEqual(text, "SUCCESS: user logged in")
        self.assertEqual(store.get(), '"abc"')

    def test_error_passthrough(self):
        store = MemoryTokenStore('"old"')
        text, err = resolve(decode('(err "bad credentials")', "login"), "login", store)
        self.assertEqual(text, "ERROR: bad credentials")
        self.assertIsNone(err)
        self.assertEqual(store.get(), '"old"')

    def test_logout_error_keeps_token(self):
        store = MemoryTokenStore('"old"')
        text, _ = resolve(decode('(err "incorrect login token")', "logout"), "logout", store)
        self.assertEqual(text, "ERROR: incorrect login token")
        self.assertEqual(store.get(), '"old"')

    def test_store_failure_is_reported(self):
        text, err = resolve(decode('(ok "in" "tok")', "login"), "login", FailingTokenStore())
        self.assertEqual(text, "SUCCESS: in")
        self.assertEqual(err, "disk full")

        text, err = resolve(decode('(ok "logged out")', "logout"), "logout", FailingTokenStore())
        self.assertEqual(text, "SUCCESS: logged out")
        self.assertEqual(err, "permission denied")

    def test_list_format(self):
        r = decode('(ok ((1 "alice" "subj1") (2 "bob" "subj2")))', "list")
        text, _ = resolve(r, "list", MemoryTokenStore())
        self.assertEqual(
            text,
            "SUCCESS:\n1:\n  From: alice\n  Subject: subj1\n2:\n  From: bob\n  Subject: subj2",
        )

    def test_fetch_format(self):
        r = decode('(ok "alice" "hello" "body text")', "fetch")
        text, _ = resolve(r, "fetch", MemoryTokenStore())
        self.assertEqual(text, "SUCCESS:\n\nFrom: alice\nSubject: hello\n\nbody text")


class FileTokenStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "login-token.txt")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file(self):
        self.assertEqual(FileTokenStore(self.path).get(), '""')

    def test_set_get_clear(self):
        store = FileTokenStore(self.path)
        store.set('"abc"')
        self.assertEqual(FileTokenStore(self.path).get(), '"abc"')
        store.clear()
        self.assertFalse(os.path.exists(self.path))
        self.assertEqual(store.get(), '""')
        store.clear()

    def test_empty_file(self):
        open(self.path, "w").close()
        self.assertEqual(FileTokenStore(self.path).get(), '""')

    def test_unwritable(self):
        store = FileTokenStore(os.path.join(self.tmp.name, "missing", "token.txt"))
        with self.assertRaises(TokenStoreError):
            store.set('"abc"')


# End to end through main()/run()
class CommandLineTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.old_cwd = os.getcwd()
        os.chdir(self.tmp.name)

    def tearDown(self):
        os.chdir(self.old_cwd)
        self.tmp.cleanup()

    def call(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = mailclient.main(argv)
        return code, out.getvalue(), err.getvalue()

    def serve(self, reply: bytes) -> ScriptedServer:
        server = ScriptedServer(reply)
        server.start()
        return server

    def test_login_then_list(self):
        server = self.serve(b'(ok "user logged in" "tok123")')
        code, out, _ = self.call(["-a", HOST, "-p", str(server.port), "login", "bob", "pw"])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(out, "SUCCESS: user logged in\n")
        self.assertEqual(server.request, b'(login "bob" "cHc=")')
        with open("login-token.txt") as f:
            self.assertEqual(f.read(), '"tok123"')

        server = self.serve(b'(ok ((1 "alice" "hi")))')
        code, out, _ = self.call(["-a", HOST, "-p", str(server.port), "list"])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(server.request, b'(list "tok123")')
        self.assertEqual(out, "SUCCESS:\n1:\n  From: alice\n  Subject: hi\n")

    def test_logout_clears_token_file(self):
        with open("login-token.txt", "w") as f:
            f.write('"tok123"')
        server = self.serve(b'(ok "logged out")')
        code, out, _ = self.call(["-a", HOST, "-p", str(server.port), "logout"])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(server.request, b'(logout "tok123")')
        self.assertFalse(os.path.exists("login-token.txt"))

    def test_server_error_is_not_fatal(self):
        server = self.serve(b'(err "unknown recipient")')
        code, out, _ = self.call(["-a", HOST, "-p", str(server.port), "send", "eve", "s", "b"])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(out, "ERROR: unknown recipient\n")
        self.assertEqual(server.request, b'(send "" "eve" "s" "b")')

    def test_malformed_reply(self):
        server = self.serve(b"HTTP/1.1 400 Bad Request")
        code, _, err = self.call(["-a", HOST, "-p", str(server.port), "list"])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, mailclient.EXIT_PROTOCOL)
        self.assertIn("Malformed reply", err)

    def test_connection_refused(self):
        code, out, err = self.call(["-a", HOST, "-p", str(pick_free_port()), "list"])
        self.assertEqual(code, mailclient.EXIT_CONNECT)
        self.assertEqual(out, "")

    def test_usage_errors(self):
        self.assertEqual(self.call([])[0], mailclient.EXIT_USAGE)
        code, _, err = self.call(["fly", "away"])
        self.assertEqual(code, mailclient.EXIT_USAGE)
        self.assertIn("Invalid command", err)
        self.assertEqual(self.call(["send", "only", "two"])[0], mailclient.EXIT_USAGE)
        self.assertEqual(self.call(["-p", "notaport", "list"])[0], mailclient.EXIT_USAGE)

    def test_invalid_command_never_connects(self):
        calls = []

        def connector(host, port):
            calls.append((host, port))
            return FakeSocket(b"(ok)")

        with self.assertRaises(mailclient.UsageError):
            run(ClientConfig(), "fetch", [], MemoryTokenStore(), connector)
        self.assertEqual(calls, [])

    def test_run_with_injected_connector(self):
        sock = FakeSocket(b'(ok "alice" "hello" "body")', recv_chunk=1)
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = run(ClientConfig(), "fetch", ["1"], MemoryTokenStore('"t"'), lambda h, p: sock)
        self.assertEqual(code, 0)
        self.assertEqual(sock.sent, [b'(fetch "t" 1)'])
        self.assertEqual(out.getvalue(), "SUCCESS:\n\nFrom: alice\nSubject: hello\n\nbody\n")

    def test_send_bytes_outside_utf8(self):
        sock = FakeSocket(b'(ok "message sent")')
        with contextlib.redirect_stdout(io.StringIO()):
            code = run(ClientConfig(), "send", ["bob", "s\udce9", "b"], MemoryTokenStore('"t"'),
                       lambda h, p: sock)
        self.assertEqual(code, 0)
        self.assertEqual(sock.sent, [b'(send "t" "bob" "s\xe9" "b")'])

    def test_transport_failure_exit_code(self):
        sock = BrokenSocket("recv")
        with mock.patch("mailclient.connect", return_value=sock):
            code, out, err = self.call(["list"])
        self.assertEqual(code, mailclient.EXIT_TRANSPORT)
        self.assertEqual(out, "")
        self.assertIn("Connection lost", err)
        self.assertTrue(sock.closed)

    def test_unresolvable_host(self):
        failure = socket.gaierror(-2, "Name or service not known")
        with mock.patch("mailclient.socket.create_connection", side_effect=failure):
            with self.assertRaises(mailclient.ConnectError) as cm:
                mailclient.connect("mail.invalid", 32323)
            self.assertIn("could not resolve mail.invalid", str(cm.exception))

            code, _, err = self.call(["-a", "mail.invalid", "list"])
        self.assertEqual(code, mailclient.EXIT_CONNECT)
        self.assertIn("could not resolve", err)

    def test_verbose_after_command(self):
        server = self.serve(b'(ok "message sent")')
        code, out, err = self.call(["send", "eve", "s", "b", "-v", "-a", HOST, "-p", str(server.port)])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(out, "SUCCESS: message sent\n")
        self.assertEqual(server.request, b'(send "" "eve" "s" "b")')
        self.assertIn('<- (send "" "eve" "s" "b")', err)
        self.assertIn("-> b'(ok \"message sent\")'", err)

    def test_options_after_command(self):
        server = self.serve(b"(ok ())")
        code, out, _ = self.call(["list", "-p", str(server.port), "-a", HOST])
        server.join(ACCEPT_TIMEOUT_S)
        self.assertEqual(code, 0)
        self.assertEqual(out, "SUCCESS:\n")

    def test_help(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            with self.assertRaises(SystemExit) as cm:
                mailclient.main(["--help"])
        self.assertEqual(cm.exception.code, 0)
        self.assertIn("send <recipient> <subject> <body>", out.getvalue())


if __name__ == "__main__":
    unittest.main()
