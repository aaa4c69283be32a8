import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from depotsync import models  # noqa: F401
from depotsync.db import Base, configure_sqlite
from depotsync.services.mapping_store import DepotMappingRecord
from depotsync.services.pics_client import ChangeSet


class TempDatabase:
    """File-backed sqlite so worker threads get their own connections."""

    def __init__(self):
        self.directory = tempfile.mkdtemp(prefix="depotsync-test-")
        url = f"sqlite:///{(Path(self.directory) / 'test.db').as_posix()}"
        self.engine = create_engine(url, connect_args={"check_same_thread": False})
        configure_sqlite(self.engine)
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def close(self):
        self.engine.dispose()
        shutil.rmtree(self.directory, ignore_errors=True)


def mapping(depot_id: int, app_id: int, name: str, source: str = "pics") -> DepotMappingRecord:
    return DepotMappingRecord(
        depot_id=depot_id,
        app_id=app_id,
        game_name=name,
        observed_at=datetime(2024, 1, 1),
        source=source,
    )


class FakePicsClient:
    """Stands in for PicsCatalogClient; every app N owns depot N * 10 + 1."""

    def __init__(
        self,
        current_change_number: int = 1005,
        changed_apps: Iterable[int] = (),
        force_full_update: bool = False,
        on_fetch=None,
        connect_error: Optional[Exception] = None,
    ):
        self.current = current_change_number
        self.changed_apps = list(changed_apps)
        self.force_full_update = force_full_update
        self.on_fetch = on_fetch
        self.connect_error = connect_error
        self.fetch_calls: List[List[int]] = []
        self.disconnected = False

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error

    def login(self, auth_mode="anonymous"):
        return None

    def get_changes_since(self, change_number, app_changes=True):
        return ChangeSet(
            current_change_number=self.current,
            app_ids=list(self.changed_apps),
            force_full_update=self.force_full_update,
        )

    def current_change_number(self):
        return self.current

    def fetch_app_depots(self, app_ids, known_names=None):
        self.fetch_calls.append(list(app_ids))
        if self.on_fetch is not None:
            self.on_fetch(len(self.fetch_calls))
        names: Dict[int, str] = known_names or {}
        return [mapping(app_id * 10 + 1, app_id, names.get(app_id, f"Game {app_id}")) for app_id in app_ids]

    def disconnect(self):
        self.disconnected = True


class BlockingStrategy:
    """Strategy whose connect() waits on a gate, used to hold the active-job slot."""

    mode = None

    def __init__(self, gate: threading.Event):
        self.gate = gate
        self.current_change_number = 0
        self.entered = threading.Event()

    def connect(self, ctx):
        self.entered.set()
        self.gate.wait(5)
        ctx.check_cancelled()

    def batches(self, ctx):
        return iter(())

    def close(self):
        return None


def snapshot_body(count: int, change_number: int = 31000000) -> dict:
    depots = {}
    for index in range(count):
        app_id = 1000 + index
        depots[str(app_id * 10 + 1)] = {
            "ownerId": app_id,
            "appIds": [app_id],
            "appNames": [f"Snapshot Game {app_id}"],
            "source": "SteamKit2-PICS",
            "discoveredAt": "2024-05-01T12:00:00Z",
        }
    return {
        "metadata": {
            "lastUpdated": "2024-05-01T12:00:00Z",
            "totalMappings": count,
            "version": "2.0",
            "lastChangeNumber": change_number,
        },
        "depotMappings": depots,
    }
