"""Named calibration offsets, their free subset, and URDF rewriting."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Optional

from robocal.geometry import (
    Frame,
    axis_magnitude_from_rotation,
    rotation_from_axis_magnitude,
    rotation_from_rpy,
    rpy_from_rotation,
)

logger = logging.getLogger(__name__)

_PRECISION = 8
_FRAME_SUFFIXES = ("_x", "_y", "_z", "_a", "_b", "_c")

_DECLARATION = re.compile(r"^\s*<\?xml\b(.*?)\?>", re.S)
_DECLARATION_FIELD = re.compile(
    r"""(version|encoding|standalone)\s*=\s*(?:"([^"]*)"|'([^']*)')"""
)


class CalibrationOffsetParser:
    """Holds named offsets; the first ``size()`` of them are free parameters."""

    def __init__(self) -> None:
        self._names: list[str] = []
        self._offsets: list[float] = []
        self._frame_names: list[str] = []
        self._num_free = 0

    def add(self, name: str) -> bool:
        """Make ``name`` a free parameter; False if it already is one."""
        value = 0.0
        if name in self._names:
            index = self._names.index(name)
            if index < self._num_free:
                return False
            value = self._offsets.pop(index)
            del self._names[index]
        self._names.insert(self._num_free, name)
        self._offsets.insert(self._num_free, value)
        self._num_free += 1
        return True

    def add_frame(self, name, x, y, z, roll, pitch, yaw) -> bool:
        """Add the chosen six-degree-of-freedom components of a frame."""
        self._frame_names.append(name)
        for suffix, wanted in zip(_FRAME_SUFFIXES, (x, y, z, roll, pitch, yaw)):
            if wanted:
                self.add(name + suffix)
        return True

    def set(self, name: str, value: float) -> bool:
        """Set a free parameter; False if ``name`` is not free."""
        free = self._names[: self._num_free]
        if name not in free:
            return False
        self._offsets[free.index(name)] = value
        return True

    def set_frame(self, name, x, y, z, roll, pitch, yaw) -> bool:
        """Set a frame's free components from a translation and fixed-axis angles."""
        a, b, c = axis_magnitude_from_rotation(rotation_from_rpy(roll, pitch, yaw))
        for suffix, value in zip(_FRAME_SUFFIXES, (x, y, z, a, b, c)):
            self.set(name + suffix, value)
        return True

    def initialize(self) -> list[float]:
        """Return the current values of the free parameters."""
        return list(self._offsets[: self._num_free])

    def update(self, free_params) -> bool:
        """Replace the free parameters with the leading values of ``free_params``."""
        values = list(free_params)
        if len(values) < self._num_free:
            raise ValueError(
                f"expected at least {self._num_free} parameters, got {len(values)}"
            )
        self._offsets[: self._num_free] = [float(v) for v in values[: self._num_free]]
        return True

    def get(self, name: str) -> float:
        """Return the offset for ``name``, or 0.0 if it is not being calibrated."""
        if name in self._names:
            return self._offsets[self._names.index(name)]
        return 0.0

    def get_frame(self, name: str) -> Optional[Frame]:
        """Return the offset frame for a calibrated frame, else None."""
        if name not in self._frame_names:
            return None
        x, y, z, a, b, c = (self.get(name + suffix) for suffix in _FRAME_SUFFIXES)
        return Frame(rotation_from_axis_magnitude(a, b, c), [x, y, z])

    def size(self) -> int:
        return self._num_free

    def reset(self) -> bool:
        """Mark every parameter as no longer free; values are kept."""
        self._num_free = 0
        return True

    def load_offset_yaml(self, filename) -> None:
        """Load ``name: value`` lines into matching free parameters."""
        with open(filename, encoding="utf-8") as stream:
            for line in stream:
                tokens = line.split()
                if len(tokens) < 2:
                    continue
                try:
                    value = float(tokens[1])
                except ValueError:
                    continue
                param = tokens[0][:-1]
                logger.info("Loading '%s' with value %g", param, value)
                self.set(param, value)

    def offset_yaml(self) -> str:
        """Return every offset as ``name: value`` lines."""
        return "".join(
            f"{name}: {value:g}\n" for name, value in zip(self._names, self._offsets)
        )

    def update_urdf(self, urdf: str) -> str:
        """Return ``urdf`` with joint calibrations and frame origins applied."""
        try:
            declaration, root = _parse(urdf)
        except ET.ParseError:
            return urdf
        if root.tag != "robot":
            return urdf

        for joint in root.iter("joint"):
            if joint not in list(root):
                continue
            name = joint.get("name", "")
            self._update_joint_calibration(joint, name)
            frame_offset = self.get_frame(name)
            if frame_offset is not None:
                _update_origin(joint, frame_offset)

        return _render(declaration, root)

    def _update_joint_calibration(self, joint: ET.Element, name: str) -> None:
        offset = self.get(name)
        if offset == 0.0:
            return
        calibration = joint.find("calibration")
        if calibration is None:
            ET.SubElement(joint, "calibration", {"rising": f"{offset:g}"})
            return
        rising = calibration.get("rising")
        if rising is None:
            return
        try:
            offset += float(rising)
        except ValueError:
            return
        calibration.set("rising", f"{offset:g}")


def _format_vector(values) -> str:
    return " ".join(f"{round(float(v), _PRECISION) + 0.0:.{_PRECISION}f}" for v in values)


def _parse_triple(text: Optional[str]) -> Optional[list[float]]:
    pieces = (text or "").split(" ")
    if len(pieces) != 3:
        return None
    return [float(piece) for piece in pieces]


def _update_origin(joint: ET.Element, frame_offset: Frame) -> None:
    origin_xml = joint.find("origin")
    if origin_xml is None:
        frame = frame_offset
        origin_xml = ET.SubElement(joint, "origin")
    else:
        origin = Frame()
        xyz = _parse_triple(origin_xml.get("xyz"))
        if xyz is not None:
            origin.translation = Frame(translation=xyz).translation
        rpy = _parse_triple(origin_xml.get("rpy"))
        if rpy is not None:
            origin.rotation = rotation_from_rpy(*rpy)
        frame = origin.compose(frame_offset)
    origin_xml.set("xyz", _format_vector(frame.translation))
    origin_xml.set("rpy", _format_vector(rpy_from_rotation(frame.rotation)))


def _parse(urdf: str) -> tuple[Optional[dict[str, str]], ET.Element]:
    declaration = None
    match = _DECLARATION.match(urdf)
    if match:
        declaration = {
            key: double if double else single
            for key, double, single in _DECLARATION_FIELD.findall(match.group(1))
        }
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
    return declaration, ET.fromstring(urdf, parser=parser)


def _escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _condense(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def _render(declaration: Optional[dict[str, str]], root: ET.Element) -> str:
    lines: list[str] = []
    if declaration is not None:
        fields = "".join(
            f'{key}="{declaration[key]}" '
            for key in ("version", "encoding", "standalone")
            if key in declaration
        )
        lines.append(f"<?xml {fields}?>")
    _render_element(root, 0, lines)
    return "\n".join(lines) + "\n"


def _render_element(element: ET.Element, depth: int, lines: list[str]) -> None:
    indent = "  " * depth
    if element.tag is ET.Comment:
        lines.append(f"{indent}<!--{element.text or ''}-->")
        return

    attributes = "".join(f' {key}="{_escape(value)}"' for key, value in element.attrib.items())
    children = list(element)
    text = _condense(element.text)
    tag = element.tag

    if not children:
        if text:
            lines.append(f"{indent}<{tag}{attributes}>{_escape(text)}</{tag}>")
        else:
            lines.append(f"{indent}<{tag}{attributes} />")
        return

    lines.append(f"{indent}<{tag}{attributes}>")
    if text:
        lines.append(f"{indent}  {_escape(text)}")
    for child in children:
        _render_element(child, depth + 1, lines)
        tail = _condense(child.tail)
        if tail:
            lines.append(f"{indent}  {_escape(tail)}")
    lines.append(f"{indent}</{tag}>")