"""Shared fixtures for the monitoring server tests."""

import asyncio
import json
import random

import pytest

from fiberline_monitor.auth import Role, TokenIssuer
from fiberline_monitor.config import Config
from fiberline_monitor.connection import ConnectionManager
from fiberline_monitor.simulator import Simulator

SECRET = "test-secret"


class FakeTransport:
    """Stands in for a websockets server connection."""

    def __init__(self, incoming=()):
        self.incoming = list(incoming)
        self.sent = []
        self.closed = False

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.incoming:
            yield frame
            # let the writer task flush what the frame produced
            await asyncio.sleep(0)


class BrokenTransport(FakeTransport):
    """A transport whose sends fail with something other than a close."""

    async def send(self, frame):
        raise RuntimeError("socket buffer corrupted")


def drain(connection):
    """Pop every queued frame off a connection and decode it."""
    events = []
    while not connection._queue.empty():
        events.append(json.loads(connection._queue.get_nowait()))
    return events


def events_named(events, name):
    return [event["data"] for event in events if event["event"] == name]


def command(name, data=None):
    return json.dumps({"command": name, "data": data})


@pytest.fixture
def config():
    cfg = Config.default()
    cfg.session.jwt_secret = SECRET
    cfg.simulation.random_seed = 42
    return cfg


@pytest.fixture
def simulator(config):
    return Simulator(config, rng=random.Random(42))


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET)


@pytest.fixture
def manager(simulator, issuer):
    return ConnectionManager(simulator, issuer, queue_size=64)


@pytest.fixture
def operator_token(issuer):
    return issuer.issue("operator1", Role.OPERATOR)


@pytest.fixture
def executive_token(issuer):
    return issuer.issue("executive", Role.EXECUTIVE)
