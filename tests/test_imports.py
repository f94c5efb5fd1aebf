# test_imports.py
import glm_monitor
from glm_monitor.collector import MeteringClient, collect_usage
from glm_monitor.core.query import QueryEngine


def test_package_imports():
    assert glm_monitor.__version__
    assert callable(collect_usage)
    assert MeteringClient.__name__ == "MeteringClient"
    assert QueryEngine.__name__ == "QueryEngine"


def test_entry_points_import():
    from glm_monitor.api.server import create_app
    from glm_monitor.cli.main import app

    assert app is not None
    assert create_app().title == "GLM Monitor API"


def test_collector_shares_core_types():
    from glm_monitor.collector import client
    from glm_monitor.core.exceptions import CollectorError
    from glm_monitor.storage.repository import SnapshotStore

    assert client.CollectorError is CollectorError
    assert client.SnapshotStore is SnapshotStore
