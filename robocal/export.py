"""Writing calibration results to disk."""

from __future__ import annotations

import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from robocal.offset_parser import CalibrationOffsetParser


def datecode(now: Optional[datetime] = None) -> str:
    """Timestamp used in result file names."""
    moment = now if now is not None else datetime.now()
    return moment.strftime("%Y_%m_%d_%H_%M_%S")


def export_results(
    offsets: CalibrationOffsetParser,
    initial_urdf: str,
    directory=None,
    now: Optional[datetime] = None,
) -> tuple[Path, Path]:
    """Write the calibrated URDF and the offsets YAML; return both paths."""
    code = datecode(now)
    target = Path(directory) if directory is not None else Path(tempfile.gettempdir())

    urdf_path = target / f"calibrated_{code}.urdf"
    urdf_path.write_text(offsets.update_urdf(initial_urdf), encoding="utf-8")

    yaml_path = target / f"calibration_{code}.yaml"
    yaml_path.write_text(
        offsets.offset_yaml()
        + f"depth_info: depth_{code}.yaml\n"
        + f"rgb_info: rgb_{code}.yaml\n"
        + f"urdf: calibrated_{code}.urdf\n",
        encoding="utf-8",
    )
    return urdf_path, yaml_path