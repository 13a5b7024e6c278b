"""Tests for the search engine and result utilities.

Tests cover:
- Face search by embedding and by image
- Exact bib search
- Conjunctive clothing search and its scoring
- Ranking, filtering, formatting and export of results
"""

import json

import pytest

from crowdlens.config import SearchConfig
from crowdlens.errors import NotFound, ProviderFailure
from crowdlens.models import (
    BoundingBox,
    ClothingAttributes,
    ClothingItem,
    ClothingSearchFilters,
    ClusterSearchResult,
    PersonCluster,
)
from crowdlens.search import (
    ClusterAssigner,
    SearchEngine,
    export_results_json,
    filter_results,
    format_results_simple,
    normalize_bib,
    rank_results,
    score_clothing,
    validate_filters,
)

BIB_BOX = BoundingBox(x=0.2, y=0.5, width=0.1, height=0.05)


# Test fixtures

@pytest.fixture
def engine(store):
    return SearchEngine(store, SearchConfig(face_threshold=0.6))


@pytest.fixture
def assigned_face(store, add_face):
    """Factory storing a face and assigning it to a cluster."""
    assigner = ClusterAssigner(store)

    def _assigned_face(event_id, embedding, photo=None, threshold=None):
        face = add_face(event_id, embedding, photo=photo)
        result = assigner.assign(face, event_id, threshold=threshold)
        return store.get_face_detection(face.id), result.cluster_id

    return _assigned_face


def make_result(similarity, claimed=False, photos=0):
    cluster = PersonCluster(id=f'c-{similarity}', event_id='e1', claimed_by='u1' if claimed else None)
    return ClusterSearchResult(cluster=cluster, similarity=similarity, total_photo_count=photos)


# Tests for Face Search

class TestFaceSearch:
    """Tests for search_by_face and search_by_image."""

    def test_scores_mean_of_qualifying_faces(self, store, event, engine, assigned_face, make_vector, vector_at):
        """A query 0.8 from A and far from B scores 0.8 on the A+B cluster."""
        _, cluster_id = assigned_face(event.id, make_vector(1))
        _, same_cluster = assigned_face(event.id, vector_at(0.75))
        assert same_cluster == cluster_id

        results = engine.search_by_face(event.id, make_vector(0.8, -0.6))

        assert len(results) == 1
        assert results[0].cluster.id == cluster_id
        assert results[0].similarity == pytest.approx(0.8)
        assert results[0].total_photo_count == 2
        assert results[0].rank == 1

    def test_previews_carry_cluster_score(self, store, event, engine, assigned_face, make_vector):
        assigned_face(event.id, make_vector(1))

        results = engine.search_by_face(event.id, make_vector(1))

        preview = results[0].matching_photos[0]
        assert preview.thumbnail_url == '/thumbs/p.jpg'
        assert preview.confidence == pytest.approx(1.0)

    def test_previews_limited(self, store, event, assigned_face, make_vector):
        engine = SearchEngine(store, SearchConfig(preview_limit=2))
        for _ in range(4):
            assigned_face(event.id, make_vector(1))

        results = engine.search_by_face(event.id, make_vector(1))

        assert len(results[0].matching_photos) == 2
        assert results[0].total_photo_count == 4

    def test_ranked_by_similarity(self, store, event, engine, assigned_face, make_vector):
        _, far = assigned_face(event.id, make_vector(1, 0))
        _, near = assigned_face(event.id, make_vector(0, 1))

        results = engine.search_by_face(event.id, make_vector(0.7, 0.8))

        assert [r.cluster.id for r in results] == [near, far]
        assert [r.rank for r in results] == [1, 2]

    def test_below_threshold_excluded(self, store, event, engine, assigned_face, make_vector):
        assigned_face(event.id, make_vector(1, 0))

        assert engine.search_by_face(event.id, make_vector(0, 1)) == []

    def test_explicit_threshold(self, store, event, engine, assigned_face, make_vector, vector_at):
        assigned_face(event.id, make_vector(1))

        assert len(engine.search_by_face(event.id, vector_at(0.65))) == 1
        assert engine.search_by_face(event.id, vector_at(0.65), threshold=0.9) == []

    def test_unassigned_faces_ignored(self, store, event, engine, add_face, make_vector):
        add_face(event.id, make_vector(1))

        assert engine.search_by_face(event.id, make_vector(1)) == []

    def test_mismatched_lengths_skipped(self, store, event, engine, assigned_face, make_vector):
        assigned_face(event.id, make_vector(1, dim=4))
        _, cluster_id = assigned_face(event.id, make_vector(1))

        results = engine.search_by_face(event.id, make_vector(1))

        assert [r.cluster.id for r in results] == [cluster_id]

    def test_unknown_event(self, engine, make_vector):
        with pytest.raises(NotFound):
            engine.search_by_face('missing', make_vector(1))

    def test_search_by_image_uses_best_face(self, store, event, assigned_face, make_vector, provider, detections):
        _, cluster_id = assigned_face(event.id, make_vector(0, 1))
        assigned_face(event.id, make_vector(1, 0))
        provider.add(b'selfie', faces=[
            detections.face('face-0', make_vector(1, 0), confidence=0.7),
            detections.face('face-1', make_vector(0, 1), confidence=0.99),
        ])
        engine = SearchEngine(store, vision_provider=provider)

        results = engine.search_by_image(event.id, b'selfie')

        assert [r.cluster.id for r in results] == [cluster_id]

    def test_search_by_image_without_faces(self, store, event, provider):
        engine = SearchEngine(store, vision_provider=provider)
        assert engine.search_by_image(event.id, b'empty') == []

    def test_search_by_image_without_provider(self, store, event, engine):
        with pytest.raises(ProviderFailure):
            engine.search_by_image(event.id, b'selfie')


# Tests for Bib Search

class TestBibSearch:
    """Tests for search_by_bib."""

    def test_exact_match(self, store, event, engine, assigned_face, make_vector):
        face, cluster_id = assigned_face(event.id, make_vector(1))
        store.create_bib_detection(face.photo_id, '1427', BIB_BOX, 0.93, face_detection_id=face.id)

        results = engine.search_by_bib(event.id, '1427')

        assert len(results) == 1
        assert results[0].cluster.id == cluster_id
        assert results[0].similarity == 1.0
        assert results[0].matching_photos[0].photo_id == face.photo_id
        assert results[0].matching_photos[0].confidence == pytest.approx(0.93)

    @pytest.mark.parametrize('query', ['142', '14270', '1428'])
    def test_no_partial_match(self, store, event, engine, assigned_face, make_vector, query):
        face, _ = assigned_face(event.id, make_vector(1))
        store.create_bib_detection(face.photo_id, '1427', BIB_BOX, 0.9)

        assert engine.search_by_bib(event.id, query) == []

    def test_trimmed_and_case_folded(self, store, event, engine, assigned_face, make_vector):
        face, _ = assigned_face(event.id, make_vector(1))
        store.create_bib_detection(face.photo_id, 'A12', BIB_BOX, 0.9)

        assert len(engine.search_by_bib(event.id, ' a12 ')) == 1

    def test_leading_zeros_significant(self, store, event, engine, assigned_face, make_vector):
        face, _ = assigned_face(event.id, make_vector(1))
        store.create_bib_detection(face.photo_id, '007', BIB_BOX, 0.9)

        assert engine.search_by_bib(event.id, '7') == []
        assert len(engine.search_by_bib(event.id, '007')) == 1

    def test_credits_every_cluster_in_photo(self, store, event, engine, assigned_face, make_vector):
        photo = store.create_photo(event.id)
        _, first = assigned_face(event.id, make_vector(1, 0), photo=photo)
        _, second = assigned_face(event.id, make_vector(0, 1), photo=photo)
        store.create_bib_detection(photo.id, '88', BIB_BOX, 0.9)

        results = engine.search_by_bib(event.id, '88')

        assert {r.cluster.id for r in results} == {first, second}

    def test_photos_listed_once(self, store, event, engine, assigned_face, make_vector):
        face, _ = assigned_face(event.id, make_vector(1))
        store.create_bib_detection(face.photo_id, '5', BIB_BOX, 0.9)
        store.create_bib_detection(face.photo_id, '5', BIB_BOX, 0.8)

        results = engine.search_by_bib(event.id, '5')

        assert len(results[0].matching_photos) == 1

    def test_other_events_ignored(self, store, event, engine, assigned_face, make_vector):
        other = store.create_event('Other')
        face, _ = assigned_face(other.id, make_vector(1))
        store.create_bib_detection(face.photo_id, '5', BIB_BOX, 0.9)

        assert engine.search_by_bib(event.id, '5') == []

    @pytest.mark.parametrize('query', ['', '   '])
    def test_blank_rejected(self, store, event, engine, query):
        with pytest.raises(ValueError):
            engine.search_by_bib(event.id, query)

    def test_unknown_event(self, engine):
        with pytest.raises(NotFound):
            engine.search_by_bib('missing', '5')

    def test_normalize_bib(self):
        assert normalize_bib('  AB12 ') == 'ab12'


# Tests for Clothing Search

class TestClothingScore:
    """Tests for score_clothing."""

    @pytest.fixture
    def record(self):
        return ClothingAttributes(
            id='cl1',
            photo_id='p1',
            dominant_colors=['Red', 'white'],
            items=[ClothingItem(type='jacket', primary_color='red')],
            descriptors=['red and white jacket'],
            confidence=0.9
        )

    def test_color_and_descriptor(self, record):
        filters = ClothingSearchFilters(primary_color='red', descriptor='jacket')
        assert score_clothing(record, filters) == pytest.approx(0.8)

    def test_all_filters(self, record):
        filters = ClothingSearchFilters(
            primary_color='red', secondary_color='white',
            clothing_type='jacket', descriptor='red and white'
        )
        assert score_clothing(record, filters) == pytest.approx(1.0)

    def test_failing_filter_rejects(self, record):
        """Filters are conjunctive: one miss rejects the record."""
        filters = ClothingSearchFilters(primary_color='red', secondary_color='blue')
        assert score_clothing(record, filters) is None

    def test_wrong_color_never_matches(self):
        """A blue-only record is rejected even when the descriptor matches."""
        record = ClothingAttributes(
            id='cl2', photo_id='p1', dominant_colors=['blue'], descriptors=['red jacket']
        )
        filters = ClothingSearchFilters(primary_color='red', descriptor='jacket')
        assert score_clothing(record, filters) is None

    def test_clothing_type_matches_item(self):
        record = ClothingAttributes(
            id='cl1', photo_id='p1', dominant_colors=['blue'],
            items=[ClothingItem(type='cap', primary_color='blue')],
            descriptors=['blue headwear']
        )
        filters = ClothingSearchFilters(clothing_type='CAP')
        assert score_clothing(record, filters) == pytest.approx(0.4)

    def test_clothing_type_missing(self, record):
        assert score_clothing(record, ClothingSearchFilters(clothing_type='hat')) is None

    def test_descriptor_missing(self, record):
        assert score_clothing(record, ClothingSearchFilters(descriptor='hoodie')) is None

    def test_validate_filters(self):
        with pytest.raises(ValueError):
            validate_filters(ClothingSearchFilters())
        filters = ClothingSearchFilters(primary_color='red')
        assert validate_filters(filters) is filters


class TestClothingSearch:
    """Tests for search_by_clothing."""

    def _dress(self, store, face, colors, descriptors, items=()):
        store.create_clothing_attributes(
            photo_id=face.photo_id,
            dominant_colors=colors,
            items=[ClothingItem(type=t, primary_color=colors[0]) for t in items],
            descriptors=descriptors,
            confidence=0.9,
            face_detection_id=face.id
        )

    def test_red_jacket(self, store, event, engine, assigned_face, make_vector):
        face, cluster_id = assigned_face(event.id, make_vector(1, 0))
        self._dress(store, face, ['red'], ['red jacket'])
        other, _ = assigned_face(event.id, make_vector(0, 1))
        self._dress(store, other, ['blue'], ['blue jacket'])

        results = engine.search_by_clothing(
            event.id, ClothingSearchFilters(primary_color='red', descriptor='jacket')
        )

        assert len(results) == 1
        assert results[0].cluster.id == cluster_id
        assert results[0].similarity == pytest.approx(0.8)
        assert results[0].matching_photos[0].confidence == pytest.approx(0.8)

    def test_adding_unmet_filter_removes_match(self, store, event, engine, assigned_face, make_vector):
        face, _ = assigned_face(event.id, make_vector(1))
        self._dress(store, face, ['red'], ['red jacket'])

        results = engine.search_by_clothing(
            event.id,
            ClothingSearchFilters(primary_color='red', secondary_color='blue', descriptor='jacket')
        )

        assert results == []

    def test_cluster_scores_best_record(self, store, event, engine, assigned_face, make_vector):
        first, cluster_id = assigned_face(event.id, make_vector(1))
        second, same = assigned_face(event.id, make_vector(1))
        assert same == cluster_id
        self._dress(store, first, ['red'], ['red shirt'])
        self._dress(store, second, ['red', 'white'], ['red and white shirt'])

        results = engine.search_by_clothing(
            event.id, ClothingSearchFilters(primary_color='red', secondary_color='white')
        )
        assert results[0].similarity == pytest.approx(0.6)

        results = engine.search_by_clothing(event.id, ClothingSearchFilters(primary_color='red'))
        assert results[0].similarity == pytest.approx(0.4)
        assert len(results[0].matching_photos) == 2

    def test_descriptor_must_match(self, store, event, engine, assigned_face, make_vector):
        plain, _ = assigned_face(event.id, make_vector(1, 0))
        self._dress(store, plain, ['red'], ['red shirt'])
        full, full_cluster = assigned_face(event.id, make_vector(0, 1))
        self._dress(store, full, ['red'], ['red jacket'])

        results = engine.search_by_clothing(
            event.id, ClothingSearchFilters(primary_color='red', descriptor='jacket')
        )

        assert [r.cluster.id for r in results] == [full_cluster]

    def test_unlinked_record_ignored(self, store, event, engine, assigned_face, make_vector):
        face, _ = assigned_face(event.id, make_vector(1))
        store.create_clothing_attributes(face.photo_id, ['red'], [], ['red jacket'], 0.9)

        assert engine.search_by_clothing(event.id, ClothingSearchFilters(primary_color='red')) == []

    def test_unclustered_face_ignored(self, store, event, engine, add_face, make_vector):
        face = add_face(event.id, make_vector(1))
        self._dress(store, face, ['red'], ['red jacket'])

        assert engine.search_by_clothing(event.id, ClothingSearchFilters(primary_color='red')) == []

    def test_unknown_event(self, engine):
        with pytest.raises(NotFound):
            engine.search_by_clothing('missing', ClothingSearchFilters(primary_color='red'))


# Tests for Result Utilities

class TestResultUtilities:
    """Tests for ranking, filtering, formatting and export."""

    def test_rank_results(self):
        results = rank_results([make_result(0.5), make_result(0.9), make_result(0.7)])

        assert [r.similarity for r in results] == [0.9, 0.7, 0.5]
        assert [r.rank for r in results] == [1, 2, 3]

    def test_rank_results_custom_key(self):
        results = rank_results(
            [make_result(0.5, photos=10), make_result(0.9, photos=1)],
            key=lambda r: r.total_photo_count
        )
        assert results[0].total_photo_count == 10

    def test_rank_stable_for_ties(self):
        first, second = make_result(0.8), make_result(0.8)
        second.cluster.id = 'second'

        results = rank_results([first, second])

        assert results[0] is first

    def test_filter_results(self):
        results = [make_result(0.9, claimed=True), make_result(0.7), make_result(0.5)]

        assert len(filter_results(results, min_similarity=0.7)) == 2
        assert len(filter_results(results, claimed=False)) == 2
        assert len(filter_results(results, min_similarity=0.8, claimed=True)) == 1

    def test_format_results_simple(self):
        result = make_result(0.83333, claimed=True, photos=4)
        result.cluster.tags = ['bib:12']

        formatted = format_results_simple([result])

        assert formatted[0]['similarity'] == 0.83
        assert formatted[0]['cluster']['is_claimed'] is True
        assert formatted[0]['cluster']['tags'] == ['bib:12']
        assert formatted[0]['total_photo_count'] == 4

    def test_format_results_max(self):
        results = [make_result(0.9), make_result(0.8)]
        assert len(format_results_simple(results, max_results=1)) == 1

    def test_export_results_json(self, tmp_path):
        output = tmp_path / 'out' / 'results.json'

        export_results_json([make_result(0.9)], output)

        data = json.loads(output.read_text())
        assert data['total_results'] == 1
        assert data['results'][0]['similarity'] == 0.9
