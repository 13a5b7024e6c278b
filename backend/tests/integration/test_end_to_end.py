"""End-to-end integration tests for the event photo pipeline.

These tests drive the whole system through process_folder: images on disk
go through the vision provider, detections are stored and clustered, and
the clusters are then searched, claimed and re-clustered.
"""

import pytest

from crowdlens import process_folder
from crowdlens.claims import ClusterService
from crowdlens.config import Settings
from crowdlens.models import ClothingSearchFilters, ProcessingStatus
from crowdlens.search import ClusterAssigner, SearchEngine
from crowdlens.storage import EventLocks, MemoryStore


# Test fixtures

@pytest.fixture
def race_folder(tmp_path, provider, detections, make_vector, vector_at):
    """Two photos of runner A/B (similarity 0.75) and one of runner C."""
    folder = tmp_path / 'race'
    folder.mkdir()

    images = {
        '01_start.jpg': b'runner A at the start',
        '02_finish.jpg': b'runner B at the finish',
        '03_crowd.jpg': b'runner C in the crowd',
    }
    for name, data in images.items():
        (folder / name).write_bytes(data)

    provider.add(
        images['01_start.jpg'],
        faces=[detections.face('face-0', make_vector(1))],
        persons=[detections.person('person-0', 'face-0', ['red'], ['red jacket'], items=['jacket'])],
        texts=[detections.bib('1427', face_id='face-0')]
    )
    provider.add(
        images['02_finish.jpg'],
        faces=[detections.face('face-0', vector_at(0.75))],
        persons=[detections.person('person-0', 'face-0', ['red', 'white'], ['red jacket'])]
    )
    provider.add(
        images['03_crowd.jpg'],
        faces=[detections.face('face-0', make_vector(0, 0, 1))],
        persons=[detections.person('person-0', 'face-0', ['blue'], ['blue jacket'], items=['jacket'])],
        texts=[detections.bib('142', face_id='face-0')]
    )
    return folder


@pytest.fixture
def processed_event(store, provider, race_folder):
    """The race folder processed into event 'race'."""
    summary = process_folder(
        'race',
        race_folder,
        store=store,
        provider=provider,
        event_title='City Marathon',
        show_progress=False
    )
    return summary


class TestPipeline:
    """Integration tests for process -> search -> claim -> recluster."""

    def test_process_folder_summary(self, store, processed_event):
        assert processed_event == {
            'event_id': 'race',
            'photos': 3,
            'processed': 3,
            'failed': 0,
            'faces': 3,
            'clusters': 2,
        }
        assert store.get_event('race').title == 'City Marathon'
        photos = store.get_photos_by_event('race')
        assert all(p.processing_status == ProcessingStatus.PROCESSED for p in photos)
        assert photos[0].original_url.startswith('file://')

    def test_same_runner_clustered(self, store, processed_event):
        clusters = store.get_clusters_by_event('race')
        runner = clusters[0]

        assert runner.face_count == 2
        assert runner.photo_count == 2
        assert runner.tags == ['red jacket', 'bib:1427']

    def test_counters_match_membership(self, store, processed_event):
        for cluster in store.get_clusters_by_event('race'):
            faces = store.get_face_detections_by_cluster(cluster.id)
            assert cluster.face_count == len(faces)
            assert cluster.photo_count == len({f.photo_id for f in faces})

    def test_face_search(self, store, processed_event, make_vector):
        engine = SearchEngine(store)

        results = engine.search_by_face('race', make_vector(0.8, -0.6))

        assert len(results) == 1
        assert results[0].similarity == pytest.approx(0.8)
        assert results[0].total_photo_count == 2

    def test_bib_search_exact(self, store, processed_event):
        engine = SearchEngine(store)

        results = engine.search_by_bib('race', '1427')

        assert len(results) == 1
        assert results[0].cluster.tags[-1] == 'bib:1427'
        assert engine.search_by_bib('race', '14') == []

    def test_clothing_search(self, store, processed_event):
        engine = SearchEngine(store)

        red = engine.search_by_clothing(
            'race', ClothingSearchFilters(primary_color='red', descriptor='jacket')
        )
        jackets = engine.search_by_clothing('race', ClothingSearchFilters(clothing_type='jacket'))

        assert len(red) == 1
        assert red[0].similarity == pytest.approx(0.8)
        assert len(red[0].matching_photos) == 2
        assert len(jackets) == 2

    def test_claim_then_recluster(self, store, processed_event):
        """A stricter re-clustering splits A/B and drops the claim."""
        runner = store.get_clusters_by_event('race')[0]
        service = ClusterService(store)
        service.claim(runner.id, user_id='u-1', display_name='Alex')

        count = ClusterAssigner(store).recluster('race', threshold=0.95)

        assert count == 3
        clusters = store.get_clusters_by_event('race')
        assert not any(c.is_claimed for c in clusters)
        assert all(c.face_count == 1 for c in clusters)

    def test_reprocessing_folder_adds_photos(self, store, provider, race_folder, processed_event):
        summary = process_folder('race', race_folder, store=store, provider=provider, show_progress=False)

        assert summary['photos'] == 3
        assert len(store.get_photos_by_event('race')) == 6
        assert summary['clusters'] == 2


class TestFolderHandling:
    """Tests for process_folder edge cases."""

    def test_failed_provider_counted(self, store, provider, race_folder):
        from crowdlens.errors import ProviderFailure

        provider.error = ProviderFailure('service unavailable', retryable=True)

        summary = process_folder('race', race_folder, store=store, provider=provider, show_progress=False)

        assert summary['processed'] == 0
        assert summary['failed'] == 3
        assert all(
            p.processing_status == ProcessingStatus.FAILED
            for p in store.get_photos_by_event('race')
        )

    def test_missing_folder(self, store, tmp_path):
        with pytest.raises(FileNotFoundError):
            process_folder('race', tmp_path / 'nope', store=store, show_progress=False)

    def test_file_instead_of_folder(self, store, tmp_path):
        path = tmp_path / 'photo.jpg'
        path.write_bytes(b'x')

        with pytest.raises(ValueError):
            process_folder('race', path, store=store, show_progress=False)

    def test_recursive(self, store, provider, race_folder):
        nested = race_folder / 'day2'
        nested.mkdir()
        (nested / 'extra.jpg').write_bytes(b'unknown image')

        flat = process_folder('flat', race_folder, store=store, provider=provider, show_progress=False)
        deep = process_folder(
            'deep', race_folder, store=store, provider=provider, recursive=True, show_progress=False
        )

        assert flat['photos'] == 3
        assert deep['photos'] == 4


class TestDummyProviderPipeline:
    """The built-in dummy provider gives repeatable results."""

    def test_repeatable(self, tmp_path):
        folder = tmp_path / 'photos'
        folder.mkdir()
        for i in range(4):
            (folder / f'{i}.jpg').write_bytes(f'photo {i}'.encode())

        summaries = []
        for _ in range(2):
            store = MemoryStore()
            summaries.append(process_folder(
                'race', folder, store=store, settings=Settings(),
                locks=EventLocks(), show_progress=False
            ))

        assert summaries[0] == summaries[1]
        assert summaries[0]['processed'] == 4
