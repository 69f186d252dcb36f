from statcrawl.scheduler.infrastructure import metrics as m


def test_job_records_duration_and_counter(metrics):
    metrics.record_job("junior_stats", "success", 1.25)
    metrics.record_job("junior_stats", "success", 0.75)
    metrics.record_job("junior_stats", "failure", 2.0)

    assert metrics.counter(m.JOB_TOTAL, job_name="junior_stats", status="success") == 2
    assert metrics.counter(m.JOB_TOTAL, job_name="junior_stats", status="failure") == 1
    assert metrics.durations("junior_stats", "success") == [1.25, 0.75]


def test_zero_counts_are_not_recorded(metrics):
    metrics.record_entities_processed("junior", 0)
    metrics.record_records_saved("player", 0)

    assert metrics.snapshot() == {}


def test_snapshot_flattens_labels(metrics):
    metrics.record_error("fhspb_stats", "lock_failed")
    metrics.record_records_saved("player", 12)
    metrics.set_dead_letters(4)

    snapshot = metrics.snapshot()

    assert snapshot[m.ERRORS] == {"error_type=lock_failed,job_name=fhspb_stats": 1}
    assert snapshot[m.RECORDS_SAVED] == {"record_type=player": 12}
    assert snapshot[m.DEAD_LETTERS] == {"": 4}
    assert metrics.gauge(m.DEAD_LETTERS) == 4


def test_duration_history_is_bounded(metrics):
    for i in range(m.DURATION_WINDOW + 50):
        metrics.record_job("retry_worker", "success", float(i))

    durations = metrics.durations("retry_worker", "success")

    assert len(durations) == m.DURATION_WINDOW
    assert durations[0] == 50.0
    assert durations[-1] == float(m.DURATION_WINDOW + 49)
    total = metrics.counter(m.JOB_TOTAL, job_name="retry_worker", status="success")
    assert total == m.DURATION_WINDOW + 50
