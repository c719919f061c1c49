"""
Reading and writing of trajectory files.

.trc (one person per line, whitespace separated):

    v1: first line is the person count, no version line
        nr first n                      + n x (x y q)
    v2: "version 2", count
        nr height first n               + n x (x y q sx sy sz)
    v3: "version 3", count
        nr height first n r g b "comment" + n x (x y q sx sy sz)
    v4: "version 4", count
        nr height first n r g b marker "comment"
                                        + n x (frame x y q source sx sy sz dx dy marker headpx)

Points of v1-v3 files are consecutive frames starting at ``first``; v4 carries
the frame of every point and therefore supports gaps. Unknown floats are
written as ``nan``, an unknown colour as ``-1 -1 -1``. Comments are
percent-encoded inside double quotes.
"""

import math
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from tqdm import tqdm

from . import config
from .errors import ImportDataError, TrcFormatError
from .track_person import PointSource, TrackPerson, TrackPoint
from .utils import atomic_write
from .vector import Vec2F, Vec3F

TRC_WRITE_VERSION = 4
SUPPORTED_TRC_VERSIONS = (1, 2, 3, 4)


# ===============================
# Formatting helpers
# ===============================
def _f(v: Optional[float]) -> str:
    if v is None:
        return "nan"
    return repr(float(v))


def _opt(v: float) -> Optional[float]:
    return None if math.isnan(v) else v


def _color_tokens(color) -> List[str]:
    if color is None:
        return ["-1", "-1", "-1"]
    return [str(int(c)) for c in color]


def _parse_color(tokens) -> Optional[Tuple[int, int, int]]:
    rgb = tuple(int(t) for t in tokens)
    if any(c < 0 for c in rgb):
        return None
    return rgb


def _encode_comment(comment: str) -> str:
    return '"' + quote(comment or "", safe="") + '"'


def _decode_comment(token: str) -> str:
    if len(token) < 2 or token[0] != '"' or token[-1] != '"':
        raise ValueError(f"comment token {token!r} is not quoted")
    return unquote(token[1:-1])


def format_person(person: TrackPerson) -> str:
    """One v4 line for ``person``."""
    tokens = [str(person.nr), _f(person.height), str(person.first_frame if len(person) else 0),
              str(len(person))]
    tokens += _color_tokens(person.color)
    tokens += [str(person.marker_id), _encode_comment(person.comment)]
    for frame, p in person.items():
        sp = p.sp if p.sp is not None else (None, None, None)
        orient = p.orient if p.orient is not None else (None, None)
        tokens += [str(frame), _f(p.x), _f(p.y), str(p.quality), str(int(p.source)),
                   _f(sp[0]), _f(sp[1]), _f(sp[2]), _f(orient[0]), _f(orient[1]),
                   str(p.marker_id), _f(p.head_px)]
    return " ".join(tokens)


# ===============================
# Writing
# ===============================
def write_trc(path: str, persons, progress: bool = False, verbose: bool = config.VERBOSE):
    """Writes all ``persons`` (a PersonStorage or list) as .trc version 4, atomically."""
    persons = list(persons)
    with atomic_write(path) as f:
        f.write(f"version {TRC_WRITE_VERSION}\n")
        f.write(f"{len(persons)}\n")
        for person in tqdm(persons, desc="Writing trc", disable=not progress):
            f.write(format_person(person) + "\n")
    if verbose:
        print(f"[INFO] Trajectories of {len(persons)} persons written to: {path}")


# ===============================
# Reading
# ===============================
def _legacy_point(x: str, y: str, q: str, sp=None) -> TrackPoint:
    quality = int(float(q))
    source = PointSource.RECOGNIZED if quality >= config.MAX_QUALITY else PointSource.TRACKED
    return TrackPoint(Vec2F(float(x), float(y)), quality, source, sp=sp)


def _legacy_sp(tokens) -> Optional[Vec3F]:
    sx, sy, sz = (float(t) for t in tokens)
    if math.isnan(sx) or math.isnan(sy) or math.isnan(sz):
        return None
    return Vec3F(sx, sy, sz)


def _consecutive(person: TrackPerson, first: int, points: List[TrackPoint]) -> TrackPerson:
    for i, p in enumerate(points):
        person.set_point(first + i, p)
    return person


def _parse_person(tokens: List[str], version: int) -> TrackPerson:
    if version == 1:
        nr, first, n = int(tokens[0]), int(tokens[1]), int(tokens[2])
        body, width = tokens[3:], 3
        if len(body) != n * width:
            raise ValueError(f"expected {n} points with {width} values, got {len(body)} values")
        pts = [_legacy_point(*body[i:i + 3]) for i in range(0, len(body), width)]
        return _consecutive(TrackPerson(nr=nr), first, pts)

    nr, height, first, n = int(tokens[0]), _opt(float(tokens[1])), int(tokens[2]), int(tokens[3])
    if version == 2:
        person = TrackPerson(nr=nr, height=height)
        body = tokens[4:]
    else:
        person = TrackPerson(nr=nr, height=height, color=_parse_color(tokens[4:7]))
        if version == 3:
            person.comment = _decode_comment(tokens[7])
            body = tokens[8:]
        else:
            person.marker_id = int(tokens[7])
            person.comment = _decode_comment(tokens[8])
            body = tokens[9:]

    if version in (2, 3):
        width = 6
        if len(body) != n * width:
            raise ValueError(f"expected {n} points with {width} values, got {len(body)} values")
        pts = [_legacy_point(*body[i:i + 3], sp=_legacy_sp(body[i + 3:i + 6]))
               for i in range(0, len(body), width)]
        return _consecutive(person, first, pts)

    width = 12
    if len(body) != n * width:
        raise ValueError(f"expected {n} points with {width} values, got {len(body)} values")
    for i in range(0, len(body), width):
        t = body[i:i + width]
        frame = int(t[0])
        if frame in person:
            raise ImportDataError(f"person {nr} has two points at frame {frame}", nr, frame)
        sp = _legacy_sp(t[5:8])
        dx, dy = float(t[8]), float(t[9])
        point = TrackPoint(Vec2F(float(t[1]), float(t[2])), int(t[3]), PointSource(int(t[4])), sp=sp,
                           orient=None if math.isnan(dx) or math.isnan(dy) else Vec2F(dx, dy),
                           marker_id=int(t[10]), head_px=_opt(float(t[11])))
        person.set_point(frame, point)
    return person


def detect_trc_version(header: str) -> int:
    tokens = header.split()
    if len(tokens) == 1 and tokens[0].lstrip("-").isdigit():
        return 1
    if len(tokens) == 2 and tokens[0] == "version" and tokens[1].isdigit():
        version = int(tokens[1])
        if version in SUPPORTED_TRC_VERSIONS and version > 1:
            return version
    raise ValueError(f"Not supported trc version: {header.strip()!r}")


def read_trc(path: str) -> Tuple[int, List[TrackPerson]]:
    """Parses a .trc file completely; returns (version, persons)."""
    with open(path, "r", encoding="utf-8") as f:
        lines = [(i + 1, line) for i, line in enumerate(f) if line.strip()]
    if not lines:
        raise TrcFormatError("empty file", path)

    line_no, header = lines[0]
    try:
        version = detect_trc_version(header)
    except ValueError as e:
        raise TrcFormatError(str(e), path, line_no) from None

    if version == 1:
        count, rest = int(header.split()[0]), lines[1:]
    else:
        if len(lines) < 2:
            raise TrcFormatError("missing person count", path)
        try:
            count = int(lines[1][1].strip())
        except ValueError:
            raise TrcFormatError(f"invalid person count {lines[1][1].strip()!r}", path, lines[1][0]) from None
        rest = lines[2:]

    persons = []
    for line_no, line in rest:
        try:
            persons.append(_parse_person(line.split(), version))
        except ImportDataError:
            raise
        except (ValueError, IndexError) as e:
            raise TrcFormatError(f"invalid person record: {e}", path, line_no) from None
    if len(persons) != count:
        raise TrcFormatError(f"header announces {count} persons, file contains {len(persons)}", path)
    return version, persons


def import_trc(path: str, storage, verbose: bool = config.VERBOSE) -> List[int]:
    """
    Appends the persons of a .trc file to ``storage``. The file is parsed
    completely first, so a broken file leaves the storage untouched.
    Imported trajectories overlapping existing ones in time are kept as
    separate persons; joining them is left to ``PersonStorage.merge_persons``.
    """
    version, persons = read_trc(path)
    old = len(storage)
    indices = storage.add_persons(persons)
    pairs = [(i, j) for i, j in storage.overlapping_pairs(indices) if i < old <= j]
    if pairs and verbose:
        shown = ", ".join(f"{i + 1}/{j + 1}" for i, j in pairs[:10])
        more = "" if len(pairs) <= 10 else f" (+{len(pairs) - 10} more)"
        print(f"[WARNING] {len(pairs)} imported trajectories overlap existing ones in time: {shown}{more}. "
              f"They are kept separate.")
    if verbose:
        print(f"[INFO] Imported {len(persons)} persons from {path} (trc version {version}).")
    return indices


# ===============================
# 3D text import
# ===============================
def read_txt_3d(path: str) -> Tuple["OrderedDict[int, Dict[int, Vec3F]]", bool]:
    """
    Parses 'person frame x y z' rows. Header lines start with '#'; a header
    mentioning 'cm' selects centimetres, otherwise metres are assumed.
    Returns ({person: {frame: position_cm}}, in_cm).
    """
    in_cm = False
    data: "OrderedDict[int, Dict[int, Vec3F]]" = OrderedDict()
    with open(path, "r", encoding="utf-8") as f:
        rows = list(enumerate(f, start=1))
    for line_no, line in rows:
        if line.startswith("#") and "cm" in line:
            in_cm = True
    scale = 1.0 if in_cm else 100.0
    for line_no, line in rows:
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        tokens = text.split()
        try:
            person, frame = int(tokens[0]), int(tokens[1])
            x, y, z = (float(t) * scale for t in tokens[2:5])
        except (ValueError, IndexError):
            raise TrcFormatError(f"invalid row {text!r}", path, line_no) from None
        frames = data.setdefault(person, {})
        if frame in frames:
            raise ImportDataError(f"{path}:{line_no}: person {person} has two entries for frame {frame}",
                                  person, frame)
        frames[frame] = Vec3F(x, y, z)
    return data, in_cm


def import_txt_3d(path: str, storage, extr, verbose: bool = config.VERBOSE) -> List[int]:
    """Imports real-world trajectories; pixel positions are recomputed with ``extr``."""
    data, in_cm = read_txt_3d(path)
    persons = []
    for nr, frames in data.items():
        person = TrackPerson(nr=nr)
        for frame in sorted(frames):
            sp = frames[frame]
            if person.height is None:
                person.height = sp.z
            pos = extr.get_image_point(sp)
            person.set_point(frame, TrackPoint(pos, config.MAX_QUALITY, PointSource.RECOGNIZED, sp=sp))
        persons.append(person)
    indices = storage.add_persons(persons)
    if verbose:
        unit = "cm" if in_cm else "m"
        print(f"[INFO] Imported {len(persons)} persons from {path} (values in {unit}).")
    return indices
