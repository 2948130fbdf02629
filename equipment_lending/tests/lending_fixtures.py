import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path


os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("IOT_API_KEY", "test-device-key")
os.environ.setdefault("LENDING_DATA_DIR", tempfile.mkdtemp(prefix="lending-test-"))

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import SessionLocalLending, engine_lending
from models.lending_models import Classroom, Equipment, User

NOW = datetime(2025, 3, 3, 10, 0)


def reset_schema() -> None:
    Base.metadata.drop_all(bind=engine_lending)
    Base.metadata.create_all(bind=engine_lending)


def open_session():
    return SessionLocalLending()


def make_user(db, username, role="Student", score=100, student_number=None):
    user = User(
        Username=username,
        FullName=username.title(),
        Email=f"{username}@example.edu",
        Role=role,
        ResponsibilityScore=score,
        StudentNumber=student_number,
        IsActive=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_unit(db, name="Laptop 01", category="Laptop", serial=None, tag=None, status="Available", last_seen=None, tracking="Safe"):
    unit = Equipment(
        SerialNumber=serial or f"SN-{name.replace(' ', '-')}",
        Name=name,
        Category=category,
        Status=status,
        Condition="Good",
        TrackingTag=tag,
        TrackingStatus=tracking,
        LastSeenAt=last_seen,
        IsRetired=False,
    )
    db.add(unit)
    db.commit()
    db.refresh(unit)
    return unit


def make_room(db, name, has_screen):
    room = Classroom(Name=name, HasScreen=has_screen)
    db.add(room)
    db.commit()
    return room
