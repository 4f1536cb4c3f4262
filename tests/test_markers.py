"""Tests for completion-marker bookkeeping."""

from autopilot.lib.constants import MARKER_ANALYZED, MARKER_CLARIFY_COMPLETE, MARKER_CLARIFY_VERIFIED
from autopilot.lib.convergence import ConvergenceSeries
from autopilot.lib.markers import append_marker, has_marker, retract_markers


class TestAppendMarker:
    def test_appends_on_own_line(self, tmp_path):
        path = tmp_path / "tasks.md"
        path.write_text("- [ ] T001 thing")
        assert append_marker(path, MARKER_ANALYZED) is True
        assert path.read_text().endswith(f"\n{MARKER_ANALYZED}\n")
        assert "- [ ] T001 thing\n" in path.read_text()

    def test_never_duplicates(self, tmp_path):
        path = tmp_path / "tasks.md"
        path.write_text("# Tasks\n")
        append_marker(path, MARKER_ANALYZED)
        assert append_marker(path, MARKER_ANALYZED) is False
        assert path.read_text().count(MARKER_ANALYZED) == 1

    def test_creates_missing_file(self, tmp_path):
        path = tmp_path / "spec.md"
        append_marker(path, MARKER_CLARIFY_COMPLETE)
        assert has_marker(path, MARKER_CLARIFY_COMPLETE)

    def test_stall_then_force_advance_writes_once(self, tmp_path):
        series = ConvergenceSeries(2)
        series.record(4)
        assert series.record(4) is True

        path = tmp_path / "spec.md"
        path.write_text("# Spec\n[NEEDS CLARIFICATION: scope]\n")
        append_marker(path, MARKER_CLARIFY_COMPLETE)
        # A later re-check must not add a second copy
        append_marker(path, MARKER_CLARIFY_COMPLETE)
        assert path.read_text().count(MARKER_CLARIFY_COMPLETE) == 1


class TestRetractMarkers:
    def test_removes_marker_lines(self, tmp_path):
        path = tmp_path / "spec.md"
        path.write_text(f"# Spec\n\n{MARKER_CLARIFY_COMPLETE}\n\n{MARKER_CLARIFY_VERIFIED}\n")
        removed = retract_markers(path, [MARKER_CLARIFY_VERIFIED, MARKER_CLARIFY_COMPLETE])
        assert removed == [MARKER_CLARIFY_VERIFIED, MARKER_CLARIFY_COMPLETE]
        text = path.read_text()
        assert MARKER_CLARIFY_COMPLETE not in text
        assert MARKER_CLARIFY_VERIFIED not in text
        assert text.startswith("# Spec\n")

    def test_keeps_text_sharing_a_line(self, tmp_path):
        path = tmp_path / "tasks.md"
        path.write_text(f"Done analyzing {MARKER_ANALYZED}\n")
        retract_markers(path, [MARKER_ANALYZED])
        assert path.read_text() == "Done analyzing\n"

    def test_absent_markers_leave_file_untouched(self, tmp_path):
        path = tmp_path / "spec.md"
        path.write_text("# Spec\n")
        assert retract_markers(path, [MARKER_CLARIFY_COMPLETE]) == []
        assert path.read_text() == "# Spec\n"

    def test_missing_file(self, tmp_path):
        assert retract_markers(tmp_path / "nope.md", [MARKER_ANALYZED]) == []
