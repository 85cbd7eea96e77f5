"""Tests for pops_sim.steering: message parsing, command queue and channel."""

import logging
import socket
import threading
import time

import pytest

from pops_sim.steering import (
    CommandQueue,
    SteeringChannel,
    SteeringCommand,
    parse_message,
    parse_messages,
)
from pops_sim.types import CommandKind


def _poll_until(channel, n, timeout=3.0):
    """Collect ``n`` commands from ``channel`` or fail after ``timeout`` seconds."""
    commands = []
    deadline = time.monotonic() + timeout
    while len(commands) < n and time.monotonic() < deadline:
        command = channel.poll()
        if command is None:
            time.sleep(0.01)
        else:
            commands.append(command)
    assert len(commands) == n, f"got {commands}"
    return commands


# ── parsing ──────────────────────────────────────────────────────────

class TestParseMessage:
    @pytest.mark.parametrize("text,kind", [
        ("cmd:play", CommandKind.PLAY),
        ("cmd:pause", CommandKind.PAUSE),
        ("cmd:stepf", CommandKind.STEP_FORWARD),
        ("cmd:stepb", CommandKind.STEP_BACK),
        ("cmd:stop", CommandKind.STOP),
        ("sync", CommandKind.SYNC_RUNS),
    ])
    def test_simple(self, text, kind):
        assert parse_message(text) == SteeringCommand(kind)

    def test_load(self):
        command = parse_message("load:2018:treatment_2018")
        assert command.kind is CommandKind.LOAD_DATA
        assert command.year == 2018
        assert command.path == "treatment_2018"

    def test_load_path_with_colon(self):
        command = parse_message("load:2019:C:/data/t.tif")
        assert command.path == "C:/data/t.tif"

    def test_name(self):
        assert parse_message("name:scenario_a") == SteeringCommand.change_name("scenario_a")

    def test_goto(self):
        assert parse_message("goto:3") == SteeringCommand.goto(3)

    @pytest.mark.parametrize("text", [
        "cmd:jump", "goto:abc", "load:year:x", "load:2018", "hello", "synced",
    ])
    def test_unrecognized(self, text):
        assert parse_message(text) is None

    def test_surrounding_whitespace(self):
        assert parse_message(" cmd:play\n") == SteeringCommand.play()


class TestParseMessages:
    def test_order_preserved(self):
        commands = parse_messages("cmd:play;goto:2;name:x;sync")
        assert [c.kind for c in commands] == [
            CommandKind.PLAY, CommandKind.GOTO, CommandKind.CHANGE_NAME, CommandKind.SYNC_RUNS,
        ]

    def test_empty_messages_skipped(self):
        assert parse_messages(";cmd:pause;;") == [SteeringCommand.pause()]

    def test_unrecognized_logged_and_dropped(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pops_sim.steering"):
            commands = parse_messages("bogus;cmd:play")
        assert commands == [SteeringCommand.play()]
        assert "bogus" in caplog.text

    def test_nothing_after_stop(self):
        assert parse_messages("cmd:stop;cmd:play") == [SteeringCommand.stop()]


# ── queue ────────────────────────────────────────────────────────────

class TestCommandQueue:
    def test_fifo(self):
        q = CommandQueue()
        q.put(SteeringCommand.play())
        q.put(SteeringCommand.goto(1))
        assert q.poll() == SteeringCommand.play()
        assert q.poll() == SteeringCommand.goto(1)
        assert q.poll() is None
        assert q.empty()

    def test_concurrent_producers(self):
        q = CommandQueue()

        def produce():
            for _ in range(100):
                q.put(SteeringCommand.sync_runs())

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        count = 0
        while q.poll() is not None:
            count += 1
        assert count == 400


# ── channel ──────────────────────────────────────────────────────────

class TestSteeringChannel:
    def test_requires_endpoint(self):
        with pytest.raises(ValueError):
            SteeringChannel()

    def test_receives_commands(self):
        ours, theirs = socket.socketpair()
        channel = SteeringChannel(sock=ours, receive_timeout=0.05)
        channel.start()
        try:
            theirs.sendall(b"cmd:play;goto:2")
            commands = _poll_until(channel, 2)
            assert commands == [SteeringCommand.play(), SteeringCommand.goto(2)]
            assert channel.running
        finally:
            channel.close()
            theirs.close()

    def test_send_notification(self):
        ours, theirs = socket.socketpair()
        channel = SteeringChannel(sock=ours, receive_timeout=0.05)
        channel.start()
        try:
            channel.send("output:infected_2016_12_31|")
            theirs.settimeout(2.0)
            assert theirs.recv(200) == b"output:infected_2016_12_31|"
        finally:
            channel.close()
            theirs.close()

    def test_peer_close_is_stop(self):
        ours, theirs = socket.socketpair()
        channel = SteeringChannel(sock=ours, receive_timeout=0.05)
        channel.start()
        theirs.close()
        try:
            assert _poll_until(channel, 1) == [SteeringCommand.stop()]
            channel._thread.join(timeout=2.0)
            assert not channel.running
        finally:
            channel.close()

    def test_stop_ends_reader(self):
        ours, theirs = socket.socketpair()
        channel = SteeringChannel(sock=ours, receive_timeout=0.05)
        channel.start()
        try:
            theirs.sendall(b"cmd:stop;cmd:play")
            assert _poll_until(channel, 1) == [SteeringCommand.stop()]
            channel._thread.join(timeout=2.0)
            assert not channel.running
            assert channel.poll() is None
        finally:
            channel.close()
            theirs.close()

    def test_local_close_is_not_stop(self):
        ours, theirs = socket.socketpair()
        channel = SteeringChannel(sock=ours, receive_timeout=0.05)
        channel.start()
        channel.close()
        assert not channel.running
        assert channel.poll() is None
        theirs.close()

    def test_connects_to_server(self):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        host, port = server.getsockname()
        channel = SteeringChannel(host, port, receive_timeout=0.05)
        channel.start()
        conn, _ = server.accept()
        try:
            conn.sendall(b"cmd:pause;")
            assert _poll_until(channel, 1) == [SteeringCommand.pause()]
        finally:
            channel.close()
            conn.close()
            server.close()
