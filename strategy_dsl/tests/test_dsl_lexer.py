# strategy_dsl/tests/test_dsl_lexer.py

import pytest

from strategy_dsl.src.diagnostics import Diagnostics, LexicalError
from strategy_dsl.src.dsl_lexer import Token, describe_kind, tokenize


def kinds(source):
    return [t.kind for t in tokenize(source)]


def test_operators_prefer_longest_match():
    assert kinds("a >= b ** 2 -> c") == ["IDENT", "GE", "IDENT", "POWER", "NUMBER", "ARROW", "IDENT", "EOF"]
    assert kinds("x += 1; y -= 2") == ["IDENT", "PLUS_ASSIGN", "NUMBER", "SEMI", "IDENT", "MINUS_ASSIGN", "NUMBER", "EOF"]
    assert kinds("a && b || !c") == ["IDENT", "AND_AND", "IDENT", "OR_OR", "BANG", "IDENT", "EOF"]


def test_keywords_only_match_whole_identifiers():
    tokens = tokenize("strategy strategyX rules rules_v2 buy")
    assert [t.kind for t in tokens] == ["strategy", "IDENT", "rules", "IDENT", "buy", "EOF"]
    assert tokens[1].value == "strategyX"


def test_indicator_and_price_names_are_identifiers():
    # SMA, RSI and the bar fields are plain names resolved later
    assert kinds("SMA(close, 20)") == ["IDENT", "LPAREN", "IDENT", "COMMA", "NUMBER", "RPAREN", "EOF"]


def test_dates_win_over_numbers():
    tokens = tokenize("2024-01-02 2024-06-28T16:00:00Z 2024 - 01")
    assert [t.kind for t in tokens] == ["DATE", "DATE", "NUMBER", "MINUS", "NUMBER", "EOF"]
    assert tokens[1].value == "2024-06-28T16:00:00Z"


def test_number_forms():
    tokens = tokenize("42 3.25 1e6 2.5E-3")
    assert [t.value for t in tokens[:-1]] == ["42", "3.25", "1e6", "2.5E-3"]
    assert all(t.kind == "NUMBER" for t in tokens[:-1])


def test_strings_with_escapes_and_both_quotes():
    tokens = tokenize(r'"say \"hi\"" ' + r"'it\'s'")
    assert [t.kind for t in tokens] == ["STRING", "STRING", "EOF"]
    assert tokens[0].value == r'"say \"hi\""'


def test_comments_are_skipped_and_lines_tracked():
    source = "a // trailing\n/* block\n comment */ b\n  c"
    tokens = tokenize(source)
    assert [t.value for t in tokens[:-1]] == ["a", "b", "c"]
    assert (tokens[1].line, tokens[1].col) == (3, 13)
    assert (tokens[2].line, tokens[2].col) == (4, 3)


def test_offsets_cover_token_text():
    source = "when (rsi < 30)"
    for tok in tokenize(source)[:-1]:
        assert source[tok.start:tok.end] == tok.value


def test_eof_token_sits_after_last_character():
    tokens = tokenize("a\nbc")
    eof = tokens[-1]
    assert eof.kind == "EOF"
    assert (eof.start, eof.line, eof.col) == (4, 2, 3)


def test_empty_source_is_just_eof():
    tokens = tokenize("")
    assert tokens == [Token("EOF", "", 0, 0, 1, 1)]


def test_unknown_character_raises_without_collector():
    with pytest.raises(LexicalError) as ei:
        tokenize("a # b")
    err = ei.value
    assert "Unexpected character" in err.message
    assert (err.line, err.col) == (1, 3)


def test_lexical_errors_are_collected_and_skipped():
    diagnostics = Diagnostics("bad.strat")
    tokens = tokenize("a # b $ c", diagnostics, "bad.strat")
    assert [t.value for t in tokens[:-1]] == ["a", "b", "c"]
    errors = diagnostics.errors
    assert len(errors) == 2
    assert [e.col for e in errors] == [3, 7]
    assert all(isinstance(e, LexicalError) for e in errors)
    assert errors[0].file == "bad.strat"


def test_characters_outside_the_grammar_are_lexical_errors():
    diagnostics = Diagnostics()
    tokens = tokenize("@x => y", diagnostics)
    assert [t.kind for t in tokens] == ["IDENT", "ASSIGN", "GT", "IDENT", "EOF"]
    (err,) = diagnostics.errors
    assert isinstance(err, LexicalError)
    assert err.message == "Unexpected character: '@'"
    assert (err.line, err.col) == (1, 1)


def test_unterminated_string_consumes_rest_of_line():
    diagnostics = Diagnostics()
    tokens = tokenize('x = "abc\ny', diagnostics)
    assert [t.kind for t in tokens] == ["IDENT", "ASSIGN", "IDENT", "EOF"]
    assert tokens[2].line == 2
    assert diagnostics.errors[0].message == "Unterminated string literal"


def test_unterminated_block_comment_ends_input():
    diagnostics = Diagnostics()
    tokens = tokenize("a /* never closed\nb", diagnostics)
    assert [t.kind for t in tokens] == ["IDENT", "EOF"]
    assert diagnostics.errors[0].message == "Unterminated block comment"


def test_describe_kind_spelling():
    assert describe_kind("SEMI") == "';'"
    assert describe_kind("strategy") == "'strategy'"
    assert describe_kind("EOF") == "end of input"
    assert tokenize("foo")[0].describe() == "identifier 'foo'"
