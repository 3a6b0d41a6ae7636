import asyncio
import json

import pytest
from click.testing import CliRunner

from conftest import make_command
from delivery_pipeline import cli
from delivery_pipeline.models import DetailCode, ExecutionDetail, ExecutionDetailStatus, Message
from delivery_pipeline.persistence import Persistence


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: None)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def _message(message_id: str, created_at: int) -> Message:
    base = make_command()
    return Message(
        id=message_id,
        organization_id=base.organization_id,
        environment_id=base.environment_id,
        notification_id=base.notification_id,
        subscriber_id=base.subscriber_id,
        template_id=base.template_id,
        job_id=base.job_id,
        transaction_id=base.transaction_id,
        email="user@example.com",
        created_at=created_at,
    )


async def _seed(db_path: str) -> None:
    store = Persistence(db_path)
    await store.init_db()
    await store.create_message(_message("m-old", 0))
    await store.create_message(_message("m-new", 10**10))
    await store.insert_execution_detail(
        ExecutionDetail.for_command(
            make_command(),
            message_id="m-new",
            detail=DetailCode.MESSAGE_SENT,
            status=ExecutionDetailStatus.SUCCESS,
            raw='{"id": "prov-1"}',
        )
    )


def test_init_db(db_path, tmp_path):
    result = CliRunner().invoke(cli.main, ["--config", str(tmp_path / "none.ini"), "--db", db_path, "init-db"])
    assert result.exit_code == 0, result.output
    assert "Database initialised" in result.output
    assert asyncio.run(Persistence(db_path).get_message("missing")) is None


def test_details_table_and_json(db_path):
    asyncio.run(_seed(db_path))
    runner = CliRunner()

    result = runner.invoke(cli.main, ["--db", db_path, "details", "m-new"])
    assert result.exit_code == 0, result.output
    assert "MESSAGE_SENT" in result.output
    assert "user@example.com" in result.output

    result = runner.invoke(cli.main, ["--db", db_path, "details", "m-new", "--json"])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["message"]["id"] == "m-new"
    assert data["execution_details"][0]["detail"] == "MESSAGE_SENT"


def test_details_unknown_message(db_path):
    asyncio.run(Persistence(db_path).init_db())
    result = CliRunner().invoke(cli.main, ["--db", db_path, "details", "nope"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_purge_expired(db_path):
    asyncio.run(_seed(db_path))
    result = CliRunner().invoke(cli.main, ["--db", db_path, "purge-expired"])
    assert result.exit_code == 0, result.output
    assert "Removed 1 expired message(s)" in result.output
    assert asyncio.run(Persistence(db_path).get_message("m-old")) is None
