import os
import unittest

os.environ.setdefault("GEAR_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

from ..db.base import Base
from ..db.session import build_engine, build_sessionmaker
from ..models import rental_models  # noqa: F401
from ..services.equipment_service import create_asset_batch, create_equipment
from ..services.identity_service import ActorIdentity
from ..services.reservation_service import ItemRequest, create_reservation


ADMIN = ActorIdentity(id="admin-1", name="Desk Admin", email="desk@film.example", role="admin")
STUDENT = ActorIdentity(id="student-1", name="Kim Student", email="kim@film.example", role="student")
OTHER_STUDENT = ActorIdentity(id="student-2", name="Lee Student", email="lee@film.example", role="student")


def make_session_factory(db_url: str = "sqlite+pysqlite:///:memory:"):
    engine = build_engine(db_url)
    Base.metadata.create_all(engine)
    return engine, build_sessionmaker(engine)


class DatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def make_equipment(self, name="FX3", total=2, serials=("A1", "A2"), **fields):
        payload = {"equipmentName": name, "totalQuantity": total}
        payload.update(fields)
        equipment = create_equipment(self.db, ADMIN, payload)
        assets = create_asset_batch(self.db, ADMIN, equipment.EquipmentID, list(serials)) if serials else []
        return equipment, assets

    def make_reservation(self, items, start="2025-03-01", end="2025-03-03", actor=STUDENT, purpose="Short film"):
        requests = [ItemRequest(equipment_id=equipment_id, quantity=quantity) for equipment_id, quantity in items]
        return create_reservation(
            self.db,
            actor,
            purpose=purpose,
            purpose_detail="Thesis shoot",
            start_date=start,
            end_date=end,
            items=requests,
            leader_phone="010-0000-0000",
        )
