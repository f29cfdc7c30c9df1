from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

from diff_match_patch import diff_match_patch

from sttcompare.stt_compare import ComparisonOutcome, SessionReport
from sttcompare.text_accuracy import accuracy_percentage, levenshtein_distance


_PUNCTUATION_NORMALIZE = str.maketrans({
    # Curly/smart double quotes → straight
    '“': '"',
    '”': '"',
    '„': '"',
    '‟': '"',
    # Curly/smart single quotes → straight
    '‘': "'",
    '’': "'",
    '‚': "'",
    '‛': "'",
    # Guillemets → straight
    '«': '"',
    '»': '"',
    '‹': "'",
    '›': "'",
    # Dashes → hyphen
    '–': '-',
    '—': '-',
    '‐': '-',
    '‑': '-',
    '−': '-',
    # Ellipsis → period
    '…': '.',
})

_PUNCTUATION_REMOVE = str.maketrans('', '', '.,!?;:"\'-')


def normalize_text_for_diff(s: str, remove_punctuation: bool = True) -> str:
    """
    Normalize text for comparison:
    - unify whitespace (converts all whitespaces to single space),
    - convert to lowercase (as case is really hard for stt),
    - normalize punctuation variants (curly quotes, dashes, etc.) to ASCII equivalents,
    - optionally remove common punctuation entirely (default: True).
    """
    s = s.translate(_PUNCTUATION_NORMALIZE)
    if remove_punctuation:
        s = s.translate(_PUNCTUATION_REMOVE)
    return " ".join(s.strip().split()).lower()


def _escape_html(s: Optional[str]) -> str:
    if s is None:
        return ""
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def _char_diffs(expected_norm: str, got_norm: str) -> list[tuple[int, str]]:
    dmp = diff_match_patch()
    diffs = dmp.diff_main(expected_norm, got_norm)
    dmp.diff_cleanupSemantic(diffs)
    return diffs


@dataclass(frozen=True)
class DiffReport:
    """Diff of the spoken phrase (ground truth) against one backend's transcript.

    Only ``text_expected`` and ``text_got`` are provided at construction time.
    All metrics are derived automatically in ``__post_init__``.
    """
    text_expected: str
    text_got: str

    # --- computed in __post_init__ (init=False) ---
    char_levenshtein: int = field(init=False, repr=False)
    chars_expected: int = field(init=False, repr=False)
    words_expected: int = field(init=False, repr=False)
    chars_got: int = field(init=False, repr=False)
    words_got: int = field(init=False, repr=False)
    chars_matched: int = field(init=False, repr=False)
    chars_inserted: int = field(init=False, repr=False)
    chars_deleted: int = field(init=False, repr=False)
    word_levenshtein: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        expected_norm = normalize_text_for_diff(self.text_expected)
        got_norm = normalize_text_for_diff(self.text_got)
        diffs = _char_diffs(expected_norm, got_norm)
        expected_words = expected_norm.split()
        got_words = got_norm.split()

        # object.__setattr__ is the standard pattern for frozen dataclass __post_init__
        _set = object.__setattr__
        _set(self, 'char_levenshtein', diff_match_patch().diff_levenshtein(diffs))
        _set(self, 'chars_expected', len(expected_norm))
        _set(self, 'words_expected', len(expected_words))
        _set(self, 'chars_got', len(got_norm))
        _set(self, 'words_got', len(got_words))
        _set(self, 'chars_matched', sum(len(t) for op, t in diffs if op == 0))
        _set(self, 'chars_inserted', sum(len(t) for op, t in diffs if op == 1))
        _set(self, 'chars_deleted', sum(len(t) for op, t in diffs if op == -1))
        _set(self, 'word_levenshtein', levenshtein_distance(expected_words, got_words))

    @property
    def character_error_rate(self) -> float:
        """Character error rate in percent (based on char-level levenshtein distance)."""
        if self.chars_expected == 0:
            return 0.0
        return round(float(self.char_levenshtein) / self.chars_expected * 100, 1)

    @property
    def word_error_rate(self) -> float:
        """Word error rate in percent (based on word-level levenshtein distance)."""
        if self.words_expected == 0:
            return 0.0
        return round(float(self.word_levenshtein) / self.words_expected * 100, 1)

    @property
    def match_percentage(self) -> float:
        """Percentage of expected characters that matched."""
        if self.chars_expected == 0:
            return 100.0
        return round(float(self.chars_matched) / self.chars_expected * 100, 1)

    @property
    def accuracy(self) -> float:
        """Accuracy score as shown live after a comparison (special formatting trimmed)."""
        return round(accuracy_percentage(self.text_got, self.text_expected), 1)

    def to_metrics_dict(self) -> dict[str, str]:
        """Export all numeric fields and computed properties as an ordered dict of formatted strings.

        Skips str fields (raw texts). Column order follows declaration order.
        """
        d: dict[str, str] = {}
        for f in fields(self):
            val = getattr(self, f.name)
            if isinstance(val, str):
                continue
            d[f.name] = str(val)
        for name, obj in type(self).__dict__.items():
            if isinstance(obj, property):
                val = getattr(self, name)
                d[name] = f"{val:.1f}" if isinstance(val, float) else str(val)
        return d

    def diff_html(self) -> str:
        """Character diff as HTML (red = deletions, green = insertions)."""
        diffs = _char_diffs(normalize_text_for_diff(self.text_expected), normalize_text_for_diff(self.text_got))
        return diff_match_patch().diff_prettyHtml(diffs)


_CSS = """
    body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif; margin: 2em; }
    table { border-collapse: collapse; margin: 16px 0; }
    th, td { border: 1px solid #e6e6e6; padding: 6px 10px; text-align: left; font-size: 13px; }
    th { background: #f8f9fa; }
    .error { color: #b00020; }
    .muted { color: #888; }
    .panel { margin: 16px 0; }
    .panel h2 { margin: 0 0 8px 0; font-size: 14px; color: #333; }
    pre, .diff {
      padding: 12px; border: 1px solid #e6e6e6; border-radius: 8px; background: #fafafa;
      white-space: pre-wrap; word-break: break-word; font-size: 12px; line-height: 1.4;
      font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, "Liberation Mono", monospace;
    }
"""


def _fmt(value: Optional[float], suffix: str = "") -> str:
    return "-" if value is None else f"{value:.1f}{suffix}"


def _report_row(r: SessionReport, diff: Optional[DiffReport]) -> str:
    status = r.finish_reason.value if r.finish_reason else "no response"
    if r.error:
        status = f"<span class='error'>{_escape_html(r.error)}</span>"
    return (
        f"<tr><td>{_escape_html(r.name)}</td><td>{status}</td>"
        f"<td>{_fmt(r.response_time_s, ' s')}</td><td>{_fmt(r.accuracy, '%')}</td>"
        f"<td>{_fmt(diff.word_error_rate if diff else None, '%')}</td>"
        f"<td>{_fmt(diff.character_error_rate if diff else None, '%')}</td></tr>"
    )


def render_comparison_html(title: str, outcome: ComparisonOutcome) -> str:
    """Render one comparison (all backends on one recording) as a self-contained HTML document."""
    phrase = outcome.phrase
    diffs = {r.name: DiffReport(phrase, r.text) for r in outcome.reports} if phrase is not None else {}

    rows = "\n".join(_report_row(r, diffs.get(r.name)) for r in outcome.reports)
    panels = []
    for r in outcome.reports:
        body = f"<div class='diff'>{diffs[r.name].diff_html()}</div>" if r.name in diffs else ""
        panels.append(
            f"<div class='panel'><h2>{_escape_html(r.name)}</h2>{body}"
            f"<pre>{_escape_html(r.text) or '<span class=muted>(nothing)</span>'}</pre></div>"
        )
    note = " (timed out)" if outcome.timed_out else ""
    expected = f"<div class='panel'><h2>Expected</h2><pre>{_escape_html(phrase)}</pre></div>" if phrase else ""

    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <title>{_escape_html(title)}</title>
  <style>{_CSS}</style>
</head>
<body>
  <h1>{_escape_html(title)}{note}</h1>
  <table>
    <tr><th>Backend</th><th>Finished</th><th>Response</th><th>Accuracy</th><th>WER</th><th>CER</th></tr>
    {rows}
  </table>
  {expected}
  {"".join(panels)}
</body>
</html>
"""


def write_comparison_html(out_path: Path, *, title: str, outcome: ComparisonOutcome) -> Path:
    """Write the HTML comparison report to a file. Returns the resolved path."""
    out_path = out_path.resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(render_comparison_html(title, outcome), encoding="utf-8")
    return out_path
