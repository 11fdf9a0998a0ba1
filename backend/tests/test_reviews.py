import pytest

from app.services.errors import StoreConflictError, StoreValidationError
from app.services.reviews import average_of


def test_average_rounds_half_up():
    assert average_of([4, 5]).average == 4.5
    assert average_of([4, 4, 5, 5, 5, 5]).average == 4.7
    assert average_of([1, 2, 2, 2]).average == 1.8
    assert average_of([3, 4, 4, 4]).average == 3.8
    assert average_of([2, 2, 2, 3]).average == 2.3
    summary = average_of([5, 5, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 4, 5])
    assert summary.count == 20
    assert summary.average == 4.2


def test_average_of_nothing_is_zero(container):
    summary = container.reviews.average_rating("prop_1", "property")
    assert summary.average == 0.0
    assert summary.count == 0


def test_create_and_summarise_reviews(container):
    container.reviews.create("client_1", "provider_1", "provider", 5, "Excellent work on the deck")
    container.reviews.create("client_2", "provider_1", "provider", 4, "Good, slightly over schedule")

    reviews = container.reviews.list_by_target("provider_1", "provider")
    assert [review.reviewer_id for review in reviews] == ["client_2", "client_1"]
    summary = container.reviews.average_rating("provider_1", "provider")
    assert summary.average == 4.5
    assert summary.count == 2


def test_duplicate_review_conflicts(container):
    container.reviews.create("client_1", "prop_1", "property", 4, "Lovely place to stay")
    with pytest.raises(StoreConflictError):
        container.reviews.create("client_1", "prop_1", "property", 2, "Changed my mind later")
    assert container.reviews.average_rating("prop_1", "property").count == 1


@pytest.mark.parametrize(
    "target_type,rating,comment",
    [
        ("property", 0, "Rating too low here"),
        ("property", 6, "Rating too high here"),
        ("property", 3, "short"),
        ("boat", 3, "Unsupported target type"),
    ],
)
def test_review_validation(container, target_type, rating, comment):
    with pytest.raises(StoreValidationError):
        container.reviews.create("client_1", "prop_1", target_type, rating, comment)
