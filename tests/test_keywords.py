from resume_batcher.keywords import extract_keywords, jaccard


def test_extract_keywords_case_insensitive():
    keywords = extract_keywords("Senior PYTHON Developer with Docker and PostgreSQL")
    assert keywords == frozenset({"senior", "python", "developer", "docker", "postgresql"})


def test_nodejs_spellings_collapse():
    assert extract_keywords("Node.js backend") == extract_keywords("nodejs backend")
    assert "nodejs" in extract_keywords("Node.js")


def test_extract_keywords_empty():
    assert extract_keywords("") == frozenset()
    assert extract_keywords("gardening and cooking") == frozenset()


def test_jaccard():
    assert jaccard({"a", "b"}, {"a", "b"}) == 1.0
    assert jaccard({"a", "b"}, {"b", "c"}) == 1 / 3
    assert jaccard({"a"}, set()) == 0.0


def test_jaccard_of_two_empty_sets_is_zero():
    assert jaccard(set(), set()) == 0.0
