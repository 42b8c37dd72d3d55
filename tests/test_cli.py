import json
from uuid import uuid4

import pytest

from scansync.agent import SyncAgent
from scansync.cli import main
from scansync.offline_queue import DeadLetter, REASON_CONFLICT
from tests.test_sync_executor import ScriptedClient


class PingClient(ScriptedClient):
    def __init__(self, online=True, **kwargs):
        super().__init__(**kwargs)
        self.online = online

    def ping(self):
        return self.online


@pytest.fixture
def agent(tmp_path):
    return SyncAgent(queue_path=str(tmp_path / "queue.json"), client=PingClient(), delay_seconds=0)


def run(capsys, agent, *argv):
    code = main(list(argv), agent=agent)
    return code, json.loads(capsys.readouterr().out or "null")


def test_count_then_status_then_sync(capsys, agent):
    product_id = str(uuid4())
    code, out = run(capsys, agent, "count", "--product", product_id, "--quantity", "4", "--expected", "3", "--verified")
    assert code == 0
    op = agent.queue.list()[0]
    assert out == {"queued": op.id}
    assert op.payload["expected_previous_quantity"] == 3
    assert op.payload["verified"] is True

    code, out = run(capsys, agent, "status")
    assert out["total"] == 1
    assert out["online"] is False

    code, out = run(capsys, agent, "sync")
    assert code == 0
    assert out["succeeded"] == 1


def test_invalid_count(capsys, agent):
    code = main(["count", "--product", "nope", "--quantity", "1"], agent=agent)
    assert code == 1
    assert "Invalid count" in capsys.readouterr().err
    assert len(agent.queue) == 0


def test_sync_while_offline(capsys, tmp_path):
    offline = SyncAgent(queue_path=str(tmp_path / "q.json"), client=PingClient(online=False))
    code, out = run(capsys, offline, "sync")
    assert code == 2
    assert out["skipped_reason"] == "offline"


def test_dead_letter_commands(capsys, agent):
    agent.queue.enqueue("count", {"product_id": str(uuid4()), "quantity": 1, "expected_previous_quantity": 2})
    op = agent.queue.list()[0]
    agent.queue.reconcile([op.id], [])
    agent.queue.dead_letter(DeadLetter(operation=op, reason=REASON_CONFLICT))

    code, out = run(capsys, agent, "dead-letter")
    assert [d["operation"]["id"] for d in out] == [op.id]

    code, out = run(capsys, agent, "dead-letter", "--requeue", op.id, "--expected", "5")
    assert out == {"requeued": True}
    assert agent.queue.list()[0].payload["expected_previous_quantity"] == 5

    code, out = run(capsys, agent, "dead-letter", "--discard", op.id)
    assert code == 1
    assert out == {"discarded": False}


def test_clear(capsys, agent):
    agent.queue.enqueue("product_delete", {"id": str(uuid4())})
    code, out = run(capsys, agent, "clear")
    assert out == {"cleared": True}
    assert len(agent.queue) == 0
