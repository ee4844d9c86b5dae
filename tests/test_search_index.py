from convomem.search_index import InvertedIndex, tokenize


def test_tokenize_lowercases_and_drops_short_tokens() -> None:
    assert tokenize("I felt REALLY anxious at work, ok?") == ["felt", "really", "anxious", "work"]
    assert tokenize("") == []
    assert tokenize(None) == []


def test_add_lookup_and_remove_prunes_empty_buckets() -> None:
    index = InvertedIndex()
    index.add("ref_a", "Anxiety breakthrough")
    index.add("ref_b", "Work anxiety")

    assert index.lookup("anxiety") == {"ref_a", "ref_b"}
    assert index.lookup("ANXIETY") == {"ref_a", "ref_b"}

    removed = index.remove("ref_a")

    assert removed == 2
    assert index.lookup("anxiety") == {"ref_b"}
    assert "breakthrough" not in index
    assert not index.contains_key("ref_a")


def test_remove_where_drops_every_key_of_a_session() -> None:
    index = InvertedIndex()
    index.add(("s1", "m1"), "hello there friend")
    index.add(("s1", "m2"), "another hello")
    index.add(("s2", "m1"), "hello again")

    index.remove_where(lambda key: key[0] == "s1")

    assert index.lookup("hello") == {("s2", "m1")}
    assert "friend" not in index
    assert "another" not in index


def test_rebuild_all_is_idempotent() -> None:
    entities = [("a", "alpha beta gamma"), ("b", "beta delta"), ("c", "")]
    index = InvertedIndex()
    index.add("stale", "something stale")

    index.rebuild_all(entities)
    first = index.snapshot()
    index.rebuild_all(entities)
    index.rebuild_all(entities)

    assert index.snapshot() == first
    assert "stale" not in index
    assert first["beta"] == frozenset({"a", "b"})


def test_keys_for_unions_tokens() -> None:
    index = InvertedIndex()
    index.add(1, "apple banana")
    index.add(2, "banana cherry")

    assert index.keys_for(["apple", "cherry"]) == {1, 2}
    assert len(index) == 3
