"""
ייצור דיאגרמת Mermaid למחזור החיים של chatbot execution מתוך EXECUTION_TRANSITIONS.

שימוש:
    python scripts/generate_state_diagrams.py                   # הדפסה למסך
    python scripts/generate_state_diagrams.py --update-design   # עדכון DESIGN.md
    python scripts/generate_state_diagrams.py --check           # בדיקה שהדיאגרמה מסונכרנת (ל-CI)
"""
import argparse
import re
import sys
from pathlib import Path
from typing import Any

# הוספת root לנתיב כדי לאפשר ייבוא
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from omniflow.db.models.chatbot_execution import ExecutionStatus
from omniflow.state_machine.states import EXECUTION_TRANSITIONS, OPERATOR_STATUSES

DESIGN_MD_PATH = Path(__file__).resolve().parent.parent / "DESIGN.md"

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

EXECUTION_LABELS: dict[str, str] = {
    ExecutionStatus.RUNNING.value: "walk בתהליך",
    ExecutionStatus.WAITING.value: "ממתין לתשובת איש הקשר",
    ExecutionStatus.PAUSED.value: "delay node: ממתין לטיימר",
    ExecutionStatus.COMPLETED.value: "הסתיים",
    ExecutionStatus.ERROR.value: "נכשל",
}

# תוויות למעברים שיש להם טריגר ברור
TRANSITION_LABELS: dict[tuple[str, str], str] = {
    (ExecutionStatus.RUNNING.value, ExecutionStatus.WAITING.value): "message node",
    (ExecutionStatus.RUNNING.value, ExecutionStatus.PAUSED.value): "delay node",
    (ExecutionStatus.WAITING.value, ExecutionStatus.RUNNING.value): "הודעה נכנסת",
    (ExecutionStatus.PAUSED.value, ExecutionStatus.RUNNING.value): "טיימר הגיע",
}


def _sanitize_id(state_value: str) -> str:
    """המרת ערך state למזהה תקין ב-Mermaid (ללא נקודות)."""
    return state_value.replace(".", "_")


def generate_mermaid_from_transitions(
    transitions: dict[Any, list[Any]],
    labels: dict[str, str],
    initial: str | None = None,
) -> str:
    """
    ייצור דיאגרמת stateDiagram-v2 מ-transition dictionary.

    Args:
        transitions: מילון מעברים {state: [target_states]}
        labels: מילון תוויות {state_value: "תווית"}
        initial: ה-state שאליו נכנסים מ-[*]
    """
    lines: list[str] = ["stateDiagram-v2"]

    all_states: set[str] = set()
    for source, targets in transitions.items():
        all_states.add(source.value)
        for target in targets:
            all_states.add(target.value)

    for state_value in sorted(all_states):
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")
    if initial:
        lines.append(f"    [*] --> {_sanitize_id(initial)}")

    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        if not targets:
            lines.append(f"    {source_id} --> [*]")
            continue
        for target in targets:
            target_id = _sanitize_id(target.value)
            label = TRANSITION_LABELS.get((source.value, target.value))
            suffix = f" : {label}" if label else ""
            lines.append(f"    {source_id} --> {target_id}{suffix}")

    return "\n".join(lines)


def generate_all_diagrams() -> dict[str, str]:
    """ייצור כל הדיאגרמות ומחזיר מילון {שם: mermaid_string}."""
    return {
        "Chatbot execution (ExecutionStatus)": generate_mermaid_from_transitions(
            EXECUTION_TRANSITIONS,
            EXECUTION_LABELS,
            initial=ExecutionStatus.RUNNING.value,
        ),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    """עיצוב הדיאגרמות כ-markdown עם בלוקי mermaid."""
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    operators = ", ".join(status.value for status in OPERATOR_STATUSES)
    sections.append(f"סטטוסים שמפעיל יכול לכפות (force-status): {operators}\n")
    return "\n".join(sections)


def _expected_section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n### דיאגרמות מכונת מצבים\n\n{markdown_content}\n{END_MARKER}"


_SECTION_PATTERN = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)


def update_design_md(markdown_content: str, path: Path = DESIGN_MD_PATH) -> None:
    """עדכון DESIGN.md עם הדיאגרמות: החלפת הסעיף הקיים או הוספה לסוף הקובץ."""
    content = path.read_text(encoding="utf-8")
    new_section = _expected_section(markdown_content)

    if START_MARKER in content:
        content = _SECTION_PATTERN.sub(lambda _: new_section, content)
    else:
        content += "\n\n" + new_section + "\n"

    path.write_text(content, encoding="utf-8")
    print(f"עודכן: {path}")


def check_design_md(markdown_content: str, path: Path = DESIGN_MD_PATH) -> bool:
    """
    בדיקה שהדיאגרמות ב-DESIGN.md מסונכרנות עם הקוד.

    מחזיר True אם הכל מסונכרן, False אם יש הבדלים.
    """
    content = path.read_text(encoding="utf-8")
    match = _SECTION_PATTERN.search(content)
    if not match:
        print("שגיאה: לא נמצאו סמני דיאגרמות ב-DESIGN.md")
        return False

    if match.group(0) == _expected_section(markdown_content):
        print("הדיאגרמות מסונכרנות עם הקוד ✓")
        return True

    print("שגיאה: הדיאגרמות ב-DESIGN.md אינן מסונכרנות עם הקוד!")
    print("הרץ: python scripts/generate_state_diagrams.py --update-design")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(
        description="ייצור דיאגרמות Mermaid ממכונת המצבים של ה-executions"
    )
    parser.add_argument(
        "--update-design",
        action="store_true",
        help="עדכון אוטומטי של DESIGN.md עם הדיאגרמות",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="בדיקה שהדיאגרמות ב-DESIGN.md מסונכרנות עם הקוד (ל-CI)",
    )
    args = parser.parse_args()

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_design_md(markdown) else 1)
    elif args.update_design:
        update_design_md(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
