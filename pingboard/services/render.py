import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from ..models import NO_DATA, WindowSnapshot

log = logging.getLogger(__name__)

INDEX_FILE = "index.html"
TEMPLATE_NAME = "index.html.j2"
PACKAGE_TEMPLATES = Path(__file__).resolve().parent.parent / "templates"

ROW_TIME_FORMAT = "%m-%d %H:%M"
GENERATED_TIME_FORMAT = "%m-%d %H:%M:%S"


class RenderError(Exception):
    pass


def format_ts(fmt: str, ts: float) -> str:
    try:
        return time.strftime(fmt, time.localtime(ts))
    except (OverflowError, OSError, ValueError) as e:
        raise RenderError(f"timestamp {ts!r}: {e}") from e


def build_context(snapshot: WindowSnapshot, title: str = "") -> Dict[str, Any]:
    """Split the snapshot into one table per series group, keeping configured order."""
    groups: List[Dict[str, Any]] = []
    by_name: Dict[str, Dict[str, Any]] = {}
    for idx, s in enumerate(snapshot.series):
        g = by_name.get(s.group)
        if g is None:
            g = {"name": s.group, "server_names": [], "_idx": [], "rows": []}
            by_name[s.group] = g
            groups.append(g)
        g["server_names"].append(s.name)
        g["_idx"].append(idx)

    for row in snapshot.rows:
        ts = format_ts(ROW_TIME_FORMAT, row.bucket)
        for g in groups:
            g["rows"].append({"time": ts, "rt_list": [row.values[i] for i in g["_idx"]]})
    for g in groups:
        del g["_idx"]

    generated = snapshot.generated_at if snapshot.generated_at is not None else time.time()
    return {
        "title": title,
        "groups": groups,
        "generated_time": format_ts(GENERATED_TIME_FORMAT, generated),
    }


class SnapshotRenderer:
    """Renders a WindowSnapshot into ``<output_dir>/index.html``.

    The page is written to ``index.html.tmp`` first and renamed over the
    published file, so readers only ever see a complete page. A template
    named ``index.html.j2`` in ``output_dir`` takes precedence over the
    bundled one.
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        slow_threshold: int = 5000,
        show_rt: bool = False,
        title: str = "pingboard",
        template_dirs: Optional[List[Union[str, Path]]] = None,
    ):
        self.output_dir = Path(output_dir)
        self.slow_threshold = slow_threshold
        self.show_rt = show_rt
        self.title = title
        dirs = template_dirs if template_dirs is not None else [self.output_dir, PACKAGE_TEMPLATES]
        self.env = Environment(
            loader=FileSystemLoader([str(d) for d in dirs]),
            autoescape=select_autoescape(["html", "j2"]),
        )
        self.env.filters["is_slow"] = self.is_slow
        self.env.filters["render_rt"] = self.render_rt

    @property
    def index_path(self) -> Path:
        return self.output_dir / INDEX_FILE

    def is_slow(self, rt: int) -> bool:
        return rt >= self.slow_threshold

    def render_rt(self, rt: int) -> str:
        if rt == NO_DATA:
            return "-"
        if rt < 0:
            return "ERROR"
        if self.show_rt:
            return str(rt)
        return "OK"

    def render_text(self, snapshot: WindowSnapshot) -> str:
        try:
            tpl = self.env.get_template(TEMPLATE_NAME)
            return tpl.render(**build_context(snapshot, self.title))
        except TemplateError as e:
            raise RenderError(f"template {TEMPLATE_NAME}: {e}") from e

    def render(self, snapshot: WindowSnapshot) -> Path:
        html = self.render_text(snapshot)
        path = self.index_path
        tmp = path.with_name(path.name + ".tmp")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(html, encoding="utf-8")
            os.replace(str(tmp), str(path))
        except OSError as e:
            raise RenderError(f"publish {path}: {e}") from e
        log.info("render index complete")
        return path
