from unittest.mock import patch

from typer.testing import CliRunner

from libsync.main import app

runner = CliRunner()


def test_books_empty(cli_db):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_and_find(cli_db):
    result = runner.invoke(app, ["add-book", "ACC-7", "Emma", "Jane Austen"])
    assert result.exit_code == 0
    assert "Added book 000007: Emma by Jane Austen" in result.stdout

    result = runner.invoke(app, ["find", "7"])
    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Status: Available" in result.stdout


def test_duplicate_book_exits_with_error(cli_db):
    runner.invoke(app, ["add-book", "7", "Emma", "Jane Austen"])
    result = runner.invoke(app, ["add-book", "000007", "Emma", "Jane Austen"])
    assert result.exit_code == 1
    assert "Error: Book with accession number 000007 already exists." in result.stdout


def test_issue_and_return(cli_db):
    runner.invoke(app, ["add-book", "1", "Dune", "Frank Herbert"])
    runner.invoke(app, ["add-student", "Ada", "--code", "S001"])

    result = runner.invoke(app, ["issue", "1", "000001"])
    assert result.exit_code == 0
    assert "Issued loan 1" in result.stdout

    result = runner.invoke(app, ["books", "--status", "Issued"])
    assert "000001 | Dune" in result.stdout

    result = runner.invoke(app, ["return", "1"])
    assert result.exit_code == 0
    assert "Returned loan 1, fine 0" in result.stdout


def test_reserve_and_cancel(cli_db):
    runner.invoke(app, ["add-book", "1", "Dune", "Frank Herbert"])
    runner.invoke(app, ["add-student", "Ada"])
    assert "Reservation 1 is Active" in runner.invoke(app, ["reserve", "1", "1"]).stdout
    assert "Reservation 1 is Cancelled" in runner.invoke(app, ["cancel", "1"]).stdout


def test_reconcile_file(cli_db, tmp_path):
    runner.invoke(app, ["add-book", "1", "Dune", "Frank Herbert"])
    runner.invoke(app, ["add-book", "2", "Emma", "Jane Austen"])
    stock = tmp_path / "shelf.csv"
    stock.write_text("1,good\n2,torn\n9999999\n\n1\n", encoding="utf-8")

    result = runner.invoke(app, ["reconcile", str(stock)])
    assert result.exit_code == 0
    assert "Updated: 2" in result.stdout
    assert "Not Found: 1" in result.stdout
    assert "Duplicates: 1" in result.stdout


def test_json_output(cli_db):
    runner.invoke(app, ["add-book", "1", "Dune", "Frank Herbert"])
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    assert '"accession_number": "000001"' in result.stdout


def test_settings_set_and_show(cli_db):
    result = runner.invoke(app, ["settings", "set", "fine_per_day", "15"])
    assert result.exit_code == 0
    assert "fine_per_day = 15" in result.stdout
    assert "Fine Per Day: 15" in runner.invoke(app, ["settings", "show"]).stdout

    result = runner.invoke(app, ["settings", "set", "loan_limit", "3"])
    assert result.exit_code == 1
    assert "Unknown setting: loan_limit" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, cli_db):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "libsync.api:app" in args


def test_find_student_by_code(cli_db):
    runner.invoke(app, ["add-student", "Ada", "--code", "S001"])
    result = runner.invoke(app, ["find-student", "S001"])
    assert result.exit_code == 0
    assert "Student Found" in result.stdout
    assert "Name: Ada" in result.stdout

    result = runner.invoke(app, ["find-student", "S999"])
    assert result.exit_code == 1
    assert "Error: Student S999 not found." in result.stdout
