import re
from click.testing import CliRunner
from idclinic.__main__ import main


def test_parse_excel_creates_records(clinic_workbook):
    """
    Runs `idclinic parse-excel` on the sample workbook and asserts that it
    reports the patient and detail-record counts.
    """
    runner = CliRunner()
    result = runner.invoke(main, ["parse-excel", "-e", clinic_workbook, "--today", "2024-06-15"])
    assert result.exit_code == 0, result.output

    m = re.search(r"Created (\d+) Patient objects", result.output)
    assert m, f"Missing Patient line in output:\n{result.output}"
    assert int(m.group(1)) == 2
    assert "Created 3 medical_events records" in result.output
    # the orphan pregnancy row is reported, not fatal
    assert "Warnings found in mapping" in result.output


def test_parse_excel_verbose_shows_audit(clinic_workbook):
    result = CliRunner().invoke(main, ["parse-excel", "-e", clinic_workbook, "--verbose"])
    assert result.exit_code == 0, result.output
    assert "classify-sheet" in result.output


def test_parse_excel_missing_file():
    result = CliRunner().invoke(main, ["parse-excel", "-e", "does-not-exist.xlsx"])
    assert result.exit_code != 0
