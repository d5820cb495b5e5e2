import time

import pytest

from pingboard.models import Series, SnapshotRow, WindowSnapshot
from pingboard.services.render import RenderError, SnapshotRenderer, build_context

from conftest import T0

SERIES = (
    Series("h1:1", "tk-1", "tokyo"),
    Series("h2:2", "tk-2", "tokyo"),
    Series("h3:3", "office", "local"),
)


def snapshot():
    return WindowSnapshot(
        series=SERIES,
        rows=(
            SnapshotRow(T0 + 60, (120, -1, 0)),
            SnapshotRow(T0, (6000, 80, 40)),
        ),
        generated_at=T0 + 90,
    )


def test_context_groups_series_in_order():
    ctx = build_context(snapshot(), "board")

    assert ctx["title"] == "board"
    assert [g["name"] for g in ctx["groups"]] == ["tokyo", "local"]
    tokyo, local = ctx["groups"]
    assert tokyo["server_names"] == ["tk-1", "tk-2"]
    assert [r["rt_list"] for r in tokyo["rows"]] == [[120, -1], [6000, 80]]
    assert [r["rt_list"] for r in local["rows"]] == [[0], [40]]
    assert tokyo["rows"][0]["time"] == time.strftime("%m-%d %H:%M", time.localtime(T0 + 60))
    assert ctx["generated_time"] == time.strftime("%m-%d %H:%M:%S", time.localtime(T0 + 90))


@pytest.mark.parametrize("show_rt,rt,expected", [
    (False, 0, "-"),
    (False, -1, "ERROR"),
    (False, 120, "OK"),
    (True, 0, "-"),
    (True, -1, "ERROR"),
    (True, 120, "120"),
])
def test_render_rt(tmp_path, show_rt, rt, expected):
    renderer = SnapshotRenderer(tmp_path, show_rt=show_rt)
    assert renderer.render_rt(rt) == expected


def test_is_slow(tmp_path):
    renderer = SnapshotRenderer(tmp_path, slow_threshold=5000)
    assert renderer.is_slow(5000)
    assert not renderer.is_slow(4999)


def test_render_publishes_index(tmp_path):
    renderer = SnapshotRenderer(tmp_path, slow_threshold=5000, title="board")

    path = renderer.render(snapshot())

    assert path == tmp_path / "index.html"
    assert not (tmp_path / "index.html.tmp").exists()
    html = path.read_text(encoding="utf-8")
    assert "<title>board</title>" in html
    assert "tokyo" in html and "local" in html
    assert "tk-2" in html
    assert 'class="error">ERROR' in html
    assert 'class="slow">OK' in html
    assert 'class="nodata">-' in html


def test_render_replaces_previous_page(tmp_path):
    (tmp_path / "index.html").write_text("old", encoding="utf-8")
    SnapshotRenderer(tmp_path).render(snapshot())
    assert (tmp_path / "index.html").read_text(encoding="utf-8").startswith("<!DOCTYPE html>")


def test_names_are_escaped(tmp_path):
    snap = WindowSnapshot(series=(Series("k:1", "<b>x</b>", "g"),), rows=(), generated_at=T0)
    html = SnapshotRenderer(tmp_path).render_text(snap)
    assert "&lt;b&gt;x&lt;/b&gt;" in html
    assert "no data" in html


def test_template_in_output_dir_wins(tmp_path):
    (tmp_path / "index.html.j2").write_text(
        "{% for g in groups %}{{ g.name }}:{% for r in g.rows %}{{ r.rt_list[0] | render_rt }};{% endfor %}{% endfor %}",
        encoding="utf-8",
    )
    html = SnapshotRenderer(tmp_path, show_rt=True).render_text(snapshot())
    assert html == "tokyo:120;6000;local:-;40;"


def test_broken_template_raises_render_error(tmp_path):
    (tmp_path / "index.html.j2").write_text("{% for %}", encoding="utf-8")
    with pytest.raises(RenderError):
        SnapshotRenderer(tmp_path).render(snapshot())
    assert not (tmp_path / "index.html").exists()


def test_unrepresentable_time_raises_render_error(tmp_path):
    snap = WindowSnapshot(series=SERIES, rows=(SnapshotRow(10**22, (1, 2, 3)),), generated_at=T0)
    with pytest.raises(RenderError):
        build_context(snap)
    with pytest.raises(RenderError):
        SnapshotRenderer(tmp_path).render(snap)
    assert not (tmp_path / "index.html").exists()
