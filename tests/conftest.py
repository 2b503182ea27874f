import os
from pathlib import Path
from typing import Callable

import pytest

from logsweep import SECONDS_PER_DAY


NOW: float = 1_700_000_000.0

RolledFilesFactory = Callable[..., dict[str, Path]]


@pytest.fixture
def rolled_files(tmp_path: Path) -> RolledFilesFactory:
    """Create rolled files '<base_name>.<key>' in tmp_path whose mtime lies the given number of days before ``now``."""

    def create(ages_in_days: dict[str, float], base_name: str = "app.log", now: float = NOW) -> dict[str, Path]:
        files: dict[str, Path] = {}
        for key, days in ages_in_days.items():
            file = tmp_path / f"{base_name}.{key}"
            file.write_text(key)
            ts = now - days * SECONDS_PER_DAY
            os.utime(file, (ts, ts))
            files[key] = file
        return files

    return create
