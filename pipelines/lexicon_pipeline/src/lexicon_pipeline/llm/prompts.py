from __future__ import annotations

SYSTEM_INSTRUCTION = (
    "You build a lexical normalization index for Hebrew and Aramaic rabbinic texts.\n"
    "The user message contains one or more lines of source text, one per line.\n"
    "For every word form in the text that is worth indexing, return one entry:\n"
    "- surface: the form exactly as written in the text (keep its nikud if it has any).\n"
    "- base: the normalized base form (lemma), without nikud.\n"
    "- variants: every other spelling or form a reader might search for to find this surface\n"
    "  (full/defective spelling, with and without prefixes, Aramaic/Hebrew equivalents).\n"
    "- notes: optional short remark when the normalization is not obvious; otherwise omit it.\n"
    "Rules:\n"
    "- Skip stop words, numbers, punctuation and abbreviations you cannot expand with confidence.\n"
    "- Never invent words that do not occur in the text.\n"
    "- Each surface appears at most once.\n"
    'Return ONLY a JSON object of the form: {"entries":[{"surface":"...","base":"...","variants":["..."]}]}\n'
    'If nothing in the text is worth indexing, return {"entries":[]}.'
)


def render_batch_text(lines: list[str]) -> str:
    return "\n".join(lines)
