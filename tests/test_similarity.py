import numpy as np
import pytest

from cascade_categorizer.classifiers.similarity import EmbeddingIndex, squash


@pytest.fixture
def index() -> EmbeddingIndex:
    index = EmbeddingIndex()
    index.add_many(
        [
            ("a", np.array([1.0, 0.0, 0.0]), "1"),
            ("b", np.array([0.99, 0.1, 0.0]), "1"),
            ("c", np.array([0.98, 0.0, 0.1]), "1"),
            ("d", np.array([0.0, 1.0, 0.0]), "2"),
        ]
    )
    return index


def test_squash_is_centred_on_half() -> None:
    assert squash(0.5) == pytest.approx(0.5)
    assert squash(1.0) > 0.99
    assert squash(0.0) < 0.01


def test_agreeing_neighbours_produce_a_confident_match(index) -> None:
    match = index.find_similar(np.array([1.0, 0.0, 0.0]), k=5, threshold=0.9)

    assert match is not None
    assert match.category_id == "1"
    assert match.neighbors == 3
    assert match.agreement == 1.0
    assert 0.9 <= match.confidence <= 1.0


def test_too_few_neighbours_gives_no_match() -> None:
    index = EmbeddingIndex()
    index.add("a", np.array([1.0, 0.0]), "1")
    index.add("b", np.array([1.0, 0.1]), "1")

    assert index.find_similar(np.array([1.0, 0.0]), k=5, threshold=0.0) is None


def test_ambiguous_merchant_skips_lookup(index) -> None:
    match = index.find_similar(
        np.array([1.0, 0.0, 0.0]),
        k=5,
        threshold=0.0,
        merchant_ambiguity=0.9,
        ambiguity_cutoff=0.8,
    )
    assert match is None


def test_split_vote_stays_below_threshold() -> None:
    index = EmbeddingIndex()
    index.add_many(
        [
            ("a", np.array([1.0, 0.0]), "1"),
            ("b", np.array([1.0, 0.05]), "2"),
            ("c", np.array([1.0, 0.02]), "1"),
            ("d", np.array([1.0, 0.03]), "2"),
        ]
    )
    query = np.array([1.0, 0.0])

    assert index.find_similar(query, k=4, threshold=0.9) is None
    match = index.find_similar(query, k=4, threshold=0.0)
    assert match is not None
    assert match.agreement == 0.5
    assert match.confidence <= 0.5


def test_relabel_replaces_row_and_bad_dimensions_are_skipped(index) -> None:
    assert index.add_many([("d", np.array([0.0, 1.0, 0.0]), "3")]) == 1
    assert len(index) == 4

    assert index.add_many([("e", np.array([1.0, 0.0]), "1")]) == 0
    assert len(index) == 4


def test_payload_round_trip(index) -> None:
    restored = EmbeddingIndex.from_payload(index.to_payload())

    assert len(restored) == len(index)
    assert restored.dimensions == 3
    match = restored.find_similar(np.array([1.0, 0.0, 0.0]), k=5, threshold=0.9)
    assert match is not None
    assert match.category_id == "1"
