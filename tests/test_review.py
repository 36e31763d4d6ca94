"""Tests for phaseflow.lib.review module."""

from phaseflow.lib.review import (
    ReviewVerdict,
    is_favorable,
    parse_ac_summary,
    parse_findings,
    parse_verdict,
)

REVIEW = """# Review of #12

AC-1: MET
- [x] AC-2 export includes header row ... MET
- [ ] AC-3 | NOT_MET
AC-4: PENDING

## Findings
- CSV writer drops the trailing newline
- missing test for empty export

## Verdict
AC_NOT_MET
"""


class TestParseVerdict:

    def test_last_keyword_wins(self):
        assert parse_verdict("was AC_NOT_MET, now READY_FOR_MERGE") == ReviewVerdict.READY_FOR_MERGE

    def test_none(self):
        assert parse_verdict("looks fine to me") is None
        assert parse_verdict("") is None

    def test_favorable(self):
        assert is_favorable(None)
        assert is_favorable(ReviewVerdict.NEEDS_VERIFICATION)
        assert not is_favorable(ReviewVerdict.AC_MET_BUT_NOT_A_PLUS)
        assert not is_favorable(ReviewVerdict.AC_NOT_MET)


class TestACSummary:

    def test_counts(self):
        ac = parse_ac_summary(REVIEW)
        assert (ac.met, ac.not_met, ac.pending, ac.blocked) == (2, 1, 1, 0)

    def test_no_ac_lines(self):
        assert parse_ac_summary("Verdict: READY_FOR_MERGE") is None


class TestFindings:

    def test_section_extracted(self):
        findings = parse_findings(REVIEW)
        assert findings.startswith("## Findings")
        assert "trailing newline" in findings
        assert "AC_NOT_MET" not in findings

    def test_falls_back_to_tail(self):
        output = "\n".join(f"line {i}" for i in range(100))
        findings = parse_findings(output)
        assert findings.splitlines()[-1] == "line 99"
        assert len(findings.splitlines()) == 40
