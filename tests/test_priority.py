from datetime import datetime, timedelta, timezone

from daystart.priority import calculate_priority, default_process_not_before

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_priority_bands():
    assert calculate_priority(NOW + timedelta(seconds=30), NOW) == 100
    assert calculate_priority(NOW - timedelta(seconds=30), NOW) == 100
    assert calculate_priority(NOW - timedelta(hours=2), NOW) == 75
    assert calculate_priority(NOW + timedelta(hours=3), NOW) == 75
    assert calculate_priority(NOW + timedelta(hours=5), NOW) == 50
    assert calculate_priority(NOW + timedelta(hours=30), NOW) == 25


def test_priority_band_edges():
    assert calculate_priority(NOW + timedelta(minutes=1), NOW) == 75
    assert calculate_priority(NOW + timedelta(hours=4), NOW) == 50
    assert calculate_priority(NOW + timedelta(hours=24), NOW) == 25


def test_welcome_and_immediate_get_reserved_priority():
    later = NOW + timedelta(days=3)
    assert calculate_priority(later, NOW, is_welcome=True) == 100
    assert calculate_priority(later, NOW, immediate=True) == 100


def test_priority_is_pure():
    scheduled = NOW + timedelta(hours=6)
    assert calculate_priority(scheduled, NOW) == calculate_priority(scheduled, NOW)


def test_default_process_not_before_offset():
    scheduled = NOW + timedelta(hours=2)
    assert default_process_not_before(scheduled, 45) == scheduled - timedelta(minutes=45)
    assert default_process_not_before(scheduled, 0) == scheduled
