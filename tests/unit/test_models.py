from stepstream.models import (
    CheckboxAnswer,
    ClarificationOption,
    ClarificationQuestion,
    ClarificationStepOutput,
    RadioAnswer,
    TextAnswer,
    format_answer_text,
    format_clarification_context,
    normalize_question,
)


def _question(header, question_type=None, options=()):
    return ClarificationQuestion(
        header=header,
        question=f"{header}?",
        options=[ClarificationOption(label=label, description=desc) for label, desc in options],
        question_type=question_type,
    )


def test_normalize_question_defaults_to_radio():
    q = normalize_question(_question("Scope"))
    assert q.question_type == "radio"
    assert q.allow_other is True

    text = normalize_question(_question("Notes", "text"))
    assert text.allow_other is False

    checkbox = normalize_question(_question("Pages", "checkbox"))
    assert checkbox.allow_other is True


def test_format_answer_text():
    assert format_answer_text(RadioAnswer(selected="A")) == "A"
    assert format_answer_text(RadioAnswer(selected="A", other="custom")) == "Other: custom"
    assert (
        format_answer_text(CheckboxAnswer(selected=["A", "B"], other="C"))
        == "A, B, Other: C"
    )
    assert format_answer_text(TextAnswer(text="free form")) == "free form"


def test_format_clarification_context():
    output = ClarificationStepOutput(
        questions=[
            _question("Scope", options=[("All pages", "Every page gets the toggle")]),
            _question("Notes", "text"),
        ],
        answers={
            "0": RadioAnswer(selected="All pages"),
            "1": TextAnswer(text="Keep the current palette"),
        },
    )
    assert format_clarification_context(output) == (
        "1. Scope\n"
        "Question: Scope?\n"
        "Answer: All pages - Every page gets the toggle\n"
        "\n"
        "2. Notes\n"
        "Question: Notes?\n"
        "Answer: Keep the current palette"
    )


def test_format_clarification_context_without_answers():
    assert format_clarification_context(None) is None
    assert format_clarification_context(ClarificationStepOutput(questions=[_question("A")])) is None
