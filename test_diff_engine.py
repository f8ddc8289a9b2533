from config import DeliveryRecord
from conftest import make_listing
from diff_engine import find_new, find_status_changes, index_by_id


def record_for(listing_id, position=1, handle='1001'):
    return DeliveryRecord(listing_id, handle, '555', 1, position)


def test_find_new_keeps_fetch_order():
    fetched = [make_listing(str(n)) for n in range(12)]
    known = {'1', '4', '5', '9', '11'}

    new = find_new(fetched, known)

    assert [listing.id for listing in new] == ['0', '2', '3', '6', '7', '8', '10']


def test_find_new_is_idempotent():
    fetched = [make_listing(str(n)) for n in range(6)]
    known = {'2'}

    first = find_new(fetched, known)
    second = find_new(fetched, known | {listing.id for listing in first})

    assert second == []


def test_find_new_reports_duplicate_once():
    fetched = [make_listing('a', status='active'), make_listing('a', status='completed'), make_listing('b')]

    new = find_new(fetched, set())

    assert [listing.id for listing in new] == ['a', 'b']
    assert new[0].status == 'active'


def test_index_by_id_first_seen_wins(caplog):
    first = make_listing('a', status='active')
    index = index_by_id([first, make_listing('a', status='cancelled')])

    assert index['a'] is first
    assert 'Duplicate listing id a' in caplog.text


def test_status_changes_detected():
    tracked = [(make_listing('a', status='active'), record_for('a', 1)),
               (make_listing('b', status='active'), record_for('b', 2))]
    fetched = [make_listing('a', status='in-progress', updated_at='2025-11-01T13:00:00Z'),
               make_listing('b', status='active')]

    changes = find_status_changes(fetched, tracked)

    assert len(changes) == 1
    assert changes[0].listing_id == 'a'
    assert changes[0].old_status == 'active'
    assert changes[0].new_status == 'in-progress'
    assert changes[0].updated_at == '2025-11-01T13:00:00Z'


def test_missing_tracked_listing_is_untouched():
    tracked = [(make_listing('gone', status='active'), record_for('gone'))]

    assert find_status_changes([make_listing('other', status='completed')], tracked) == []


def test_unknown_statuses_compare_as_text():
    tracked = [(make_listing('a', status='on-hold'), record_for('a'))]

    changes = find_status_changes([make_listing('a', status='On-Hold')], tracked)

    assert [change.new_status for change in changes] == ['On-Hold']
