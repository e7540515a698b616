import json
import os

from storage import Collection, read_document, write_document


def test_insert_assigns_sequential_ids(tmp_path):
    events = Collection(str(tmp_path), 'events')
    _, _, first = events.insert({'title': 'Workshop'})
    _, _, second = events.insert({'title': 'Seminar'})

    assert (first['id'], second['id']) == (1, 2)
    assert first['created_at']
    with open(tmp_path / 'events.json', encoding='utf-8') as f:
        stored = json.load(f)
    assert stored['next_id'] == 3
    assert [e['title'] for e in stored['items']] == ['Workshop', 'Seminar']


def test_ids_are_not_reused_after_delete(tmp_path):
    news = Collection(str(tmp_path), 'news')
    news.insert({'title': 'a'})
    news.insert({'title': 'b'})
    news.delete(2)
    _, _, item = news.insert({'title': 'c'})
    assert item['id'] == 3


def test_unique_check_runs_inside_insert(tmp_path):
    members = Collection(str(tmp_path), 'members')

    def unique_email(items, new):
        if any(m['email'] == new['email'] for m in items):
            return 'duplicate'
        return None

    assert members.insert({'email': 'a@example.com'}, unique_email)[0] is True
    success, error, _ = members.insert({'email': 'a@example.com'}, unique_email)
    assert success is False
    assert error == 'duplicate'
    assert len(members.all()) == 1


def test_update_merges_and_keeps_id(tmp_path):
    leaders = Collection(str(tmp_path), 'leadership')
    leaders.insert({'name': 'Ada', 'position': 'Secretary'})

    updated = leaders.update(1, {'position': 'President', 'id': 99})
    assert updated['id'] == 1
    assert updated['position'] == 'President'
    assert updated['name'] == 'Ada'
    assert 'updated_at' in updated
    assert leaders.update(42, {'name': 'nobody'}) is None


def test_delete_where_counts_removed(tmp_path):
    likes = Collection(str(tmp_path), 'likes')
    for announcement_id in (1, 1, 2):
        likes.insert({'announcement_id': announcement_id})
    assert likes.delete_where(lambda like: like['announcement_id'] == 1) == 2
    assert [like['announcement_id'] for like in likes.all()] == [2]


def test_legacy_list_file_is_read(tmp_path):
    with open(tmp_path / 'gallery.json', 'w', encoding='utf-8') as f:
        json.dump([{'id': 4, 'title': 'old photo'}], f)

    gallery = Collection(str(tmp_path), 'gallery')
    assert gallery.get(4)['title'] == 'old photo'
    _, _, item = gallery.insert({'title': 'new photo'})
    assert item['id'] == 5


def test_corrupt_file_falls_back_to_backup(tmp_path):
    contacts = Collection(str(tmp_path), 'contacts')
    contacts.insert({'name': 'first'})
    contacts.insert({'name': 'second'})  # backup now holds the first write

    with open(tmp_path / 'contacts.json', 'w', encoding='utf-8') as f:
        f.write('{not json')

    assert [c['name'] for c in contacts.all()] == ['first']


def test_missing_file_reads_as_empty(tmp_path):
    assert Collection(str(tmp_path), 'resources').all() == []
    assert read_document(str(tmp_path / 'club_info.json'), {}) == {}


def test_write_document_creates_directories(tmp_path):
    path = os.path.join(str(tmp_path), 'nested', 'club_info.json')
    write_document(path, {'name': 'Club'})
    assert read_document(path) == {'name': 'Club'}
