import allure
from click.testing import CliRunner

from handoff import __version__
from handoff.main import handoff

pytestmark = [
    allure.epic("Handoff"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(handoff, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
