import importlib.util
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from app.services.ai.common.providers.mock import MockProvider

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "parse_statement.py"

STATEMENT = "\n".join(
    [
        "First National Bank - Account Statement",
        "01/15/2024 COFFEE SHOP -4.50",
        "01/16/2024 PAYROLL DEPOSIT 2500.00",
    ]
)

RESPONSE = '[{"date":"2024-01-15","description":"Coffee Shop","amount":-4.50,"type":"expense","category":"meals"}]'


@pytest.fixture(scope="module")
def script():
    spec = importlib.util.spec_from_file_location("parse_statement_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def statement_file(tmp_path, monkeypatch):
    monkeypatch.setenv("STATEMENT_CHUNK_DELAY_SECONDS", "0")
    path = tmp_path / "statement.txt"
    path.write_text(STATEMENT, encoding="utf-8")
    return path


def test_prints_json_result_and_progress(script, statement_file, capsys):
    with patch("app.services.ai.common.router.get_provider", return_value=MockProvider(RESPONSE)):
        code = script.main(
            [str(statement_file), "--job-id", "cli-1", "--categories", '{"expense": ["Meals"]}']
        )

    assert code == 0
    captured = capsys.readouterr()
    payload = json.loads(captured.out)
    assert payload["job_id"] == "cli-1"
    assert payload["outcome"] == "completed"
    assert payload["transactions"] == [
        {"date": "2024-01-15", "description": "Coffee Shop", "amount": -4.5, "type": "expense", "category": "Meals"}
    ]
    assert payload["summary"]["total_chunks"] == 1
    assert "segmenting: Analyzing statement layout..." in captured.err
    assert "[100%] completed:" in captured.err


def test_no_transactions_exit_code(script, statement_file, capsys):
    code = script.main([str(statement_file)])

    assert code == 1
    assert json.loads(capsys.readouterr().out)["outcome"] == "no_transactions"


def test_categories_from_file(script, statement_file, tmp_path):
    categories = tmp_path / "categories.json"
    categories.write_text('{"income": ["Sales"], "expense": []}', encoding="utf-8")

    vocabulary = script._load_categories(str(categories))

    assert vocabulary.income == ["Sales"]
    assert script._load_categories(None) is None


def test_missing_file_and_bad_categories(script, statement_file, capsys):
    assert script.main(["/nonexistent/statement.txt"]) == 2
    assert "cannot read" in capsys.readouterr().err

    assert script.main([str(statement_file), "--categories", '{"income": "not-a-list"}']) == 2
    assert "invalid --categories" in capsys.readouterr().err
