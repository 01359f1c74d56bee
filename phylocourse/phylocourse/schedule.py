"""Course page: schedule config loading and static HTML rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
import json
from pathlib import Path
import shutil
from typing import Any, Dict, List

import yaml
from jinja2 import Environment, PackageLoader, select_autoescape


@dataclass(frozen=True)
class Session:
    date: dt.date
    topic: str
    lecture: str | None = None
    exercise: str | None = None
    notes: str | None = None


@dataclass
class Course:
    title: str
    term: str = ""
    instructor: str = ""
    base_url: str = ""
    assets: str | None = None
    sessions: List[Session] = field(default_factory=list)
    source_dir: Path | None = None


def _load_yaml_or_json(path: Path) -> Dict[str, Any]:
    txt = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        return dict(yaml.safe_load(txt) or {})
    return dict(json.loads(txt) or {})


def _parse_date(raw: Any, index: int) -> dt.date:
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    if raw is None or str(raw).strip() == "":
        raise ValueError(f"Session {index} has no date")
    try:
        return dt.date.fromisoformat(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"Session {index} has an invalid date {raw!r}; use YYYY-MM-DD") from exc


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_course(path: str | Path) -> Course:
    """Read a course config (YAML or JSON); sessions come back sorted by date."""
    p = Path(path)
    d = _load_yaml_or_json(p)
    if "title" not in d:
        raise ValueError(f"{p}: course config needs a 'title'")
    sessions = []
    for i, raw in enumerate(d.get("sessions", []) or [], start=1):
        if not isinstance(raw, dict):
            raise ValueError(f"Session {i} must be a mapping")
        if not raw.get("topic"):
            raise ValueError(f"Session {i} has no topic")
        sessions.append(
            Session(
                date=_parse_date(raw.get("date"), i),
                topic=str(raw["topic"]),
                lecture=_optional_str(raw.get("lecture")),
                exercise=_optional_str(raw.get("exercise")),
                notes=_optional_str(raw.get("notes")),
            )
        )
    sessions.sort(key=lambda s: s.date)
    return Course(
        title=str(d["title"]),
        term=str(d.get("term", "") or ""),
        instructor=str(d.get("instructor", "") or ""),
        base_url=str(d.get("base_url", "") or ""),
        assets=_optional_str(d.get("assets")),
        sessions=sessions,
        source_dir=p.resolve().parent,
    )


def resolve_link(link: str | None, base_url: str) -> str | None:
    if not link:
        return None
    if link.startswith(("http://", "https://", "mailto:", "/", "#")) or not base_url:
        return link
    if link.startswith("./"):
        link = link[2:]
    return base_url.rstrip("/") + "/" + link


def group_by_week(sessions: List[Session]) -> List[tuple[int, List[Session]]]:
    """Sessions grouped into course weeks (Monday-based), week 1 holding the first session."""
    if not sessions:
        return []
    first = sessions[0].date
    start = first - dt.timedelta(days=first.weekday())
    weeks: Dict[int, List[Session]] = {}
    for s in sessions:
        weeks.setdefault((s.date - start).days // 7 + 1, []).append(s)
    return sorted(weeks.items())


def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("phylocourse", "templates"),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_schedule(course: Course, today: dt.date | None = None) -> str:
    if today is None:
        today = dt.date.today()
    weeks = []
    for number, sessions in group_by_week(course.sessions):
        rows = [
            {
                "date": s.date,
                "topic": s.topic,
                "lecture": resolve_link(s.lecture, course.base_url),
                "exercise": resolve_link(s.exercise, course.base_url),
                "notes": s.notes,
                "past": s.date < today,
            }
            for s in sessions
        ]
        weeks.append({"number": number, "sessions": rows})
    template = _environment().get_template("schedule.html")
    return template.render(
        course=course,
        weeks=weeks,
        asset_root=resolve_link("assets", course.base_url) if course.assets else None,
        built=today,
    )


def build_site(config_path: str | Path, out_dir: str | Path, today: dt.date | None = None) -> Path:
    """Render ``index.html`` into ``out_dir`` and copy the assets directory next to it."""
    course = load_course(config_path)
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    index = out / "index.html"
    index.write_text(render_schedule(course, today=today), encoding="utf-8")
    if course.assets:
        src = Path(course.assets)
        if not src.is_absolute() and course.source_dir is not None:
            src = course.source_dir / src
        if not src.is_dir():
            raise ValueError(f"Assets directory not found: {src}")
        shutil.copytree(src, out / "assets", dirs_exist_ok=True)
    return index
