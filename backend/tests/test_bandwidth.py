"""
Unit tests for the low-bandwidth response adapter.
"""
from saathi.models.responses import QueryResponse, RelatedScheme, SourceRef
from saathi.services.bandwidth import adapt
from saathi.services.bandwidth.adapter import strip_formatting, truncate_at_word


def long_response() -> QueryResponse:
    text = " ".join(
        f"**Step {i}.** Visit the [portal](https://scholarships.gov.in) and fill in section {i} carefully."
        for i in range(1, 25)
    )
    return QueryResponse(
        response=f"## PM Scholarship\n\n{text}",
        sources=[
            SourceRef(
                scheme_id="pm-scholarship",
                name="PM Scholarship",
                official_link="https://scholarships.gov.in",
                source_department="Kendriya Sainik Board",
            )
        ],
        related_schemes=[
            RelatedScheme(scheme_id=f"s{i}", name=f"Related scheme {i}", category="scholarship", relevance_score=0.5)
            for i in range(5)
        ],
        clarification_needed=False,
        session_id="session-123",
    )


def test_normal_mode_returns_same_object():
    response = long_response()

    assert adapt(response, False) is response


def test_low_bandwidth_drops_sources_and_formatting():
    adapted = adapt(long_response(), True)

    assert adapted.sources is None
    assert adapted.related_schemes is None
    assert "**" not in adapted.response
    assert "](" not in adapted.response
    assert "#" not in adapted.response
    assert adapted.session_id == "session-123"
    assert adapted.clarification_needed is False


def test_low_bandwidth_text_is_at_most_500_chars():
    adapted = adapt(long_response(), True)

    assert len(adapted.response) <= 500
    assert adapted.response.endswith("...")


def test_low_bandwidth_payload_is_at_least_60_percent_smaller():
    response = long_response()
    assert len(response.response) > 500

    adapted = adapt(response, True)

    assert adapted.payload_size() <= 0.4 * response.payload_size()


def test_short_answer_kept_whole():
    response = QueryResponse(response="Apply online before March.", session_id="s1")

    assert adapt(response, True).response == "Apply online before March."


def test_truncate_never_splits_words():
    text = "alpha beta gamma delta"

    assert truncate_at_word(text, 13) == "alpha beta..."
    assert truncate_at_word(text, 100) == text


def test_strip_formatting_removes_markdown_and_html():
    assert strip_formatting("# Title\n- **bold** <b>tag</b> `code`") == "Title bold tag code"


def test_truncate_cuts_hard_inside_one_long_token():
    url = "https://scholarships.gov.in/" + "x" * 600

    cut = truncate_at_word(url, 500)

    assert len(cut) == 500
    assert cut.startswith("https://scholarships.gov.in/")
    assert cut.endswith("...")


def test_long_token_answer_is_not_emptied():
    response = long_response().model_copy(update={"response": "https://scholarships.gov.in/" + "x" * 600})

    adapted = adapt(response, True)

    assert adapted.response.startswith("https://scholarships.gov.in/")
    assert adapted.payload_size() <= 0.4 * response.payload_size()


def test_devanagari_answer_keeps_as_much_text_as_the_budget_allows():
    # 147 words of 6 characters each, 16 bytes each in UTF-8
    response = long_response().model_copy(update={"response": "योजना " * 147})
    assert len(response.response) > 500

    adapted = adapt(response, True)

    assert adapted.payload_size() <= 0.4 * response.payload_size()
    assert len(adapted.response) >= 350
