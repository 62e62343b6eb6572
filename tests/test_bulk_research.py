import allure

from bulk_research import __version__

pytestmark = [
    allure.epic("Bulk Research Runner"),
    allure.feature("Operator CLI"),
]


def test_version():
    assert __version__
