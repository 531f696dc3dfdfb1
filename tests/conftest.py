import json

import pytest

from hazard_engine.config import Settings
from hazard_engine.data_loader import RegionMemory, build_region_memory
from hazard_engine.geo import destination
from hazard_engine.models import HazardRecord

ORIGIN = (12.9716, 77.5946)


def hazard_at(bearing_deg, meters, origin=ORIGIN, **kw):
    lat, lng = destination(origin[0], origin[1], meters, bearing_deg)
    kw.setdefault("hazard_class", "pothole")
    return HazardRecord(lat=lat, lng=lng, **kw)


def memory_of(records, region="testville", resolution=9):
    return RegionMemory(region=region, cells=build_region_memory(records, resolution), source="test")


def write_region(directory, name, payload):
    path = directory / f"{name}.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def tmp_settings(tmp_path):
    return Settings(memory_base=str(tmp_path))
