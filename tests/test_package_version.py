import logging
from importlib.metadata import PackageNotFoundError, version

import repair_ladder


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("repair-ladder")
    except PackageNotFoundError:
        assert repair_ladder.__version__ == "0.0.0"
    else:
        assert repair_ladder.__version__ == installed_version


def test_configure_logging_sets_level(monkeypatch) -> None:
    calls = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))

    repair_ladder.configure_logging(verbose=True)
    assert calls["level"] == logging.DEBUG
    assert calls["format"] == "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"

    repair_ladder.configure_logging()
    assert calls["level"] == logging.INFO
