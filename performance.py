"""
Learner performance aggregation for E-shuri dashboards.

Pure functions only: every dashboard fetches a fresh snapshot of quiz attempts
and enrollments, then calls into this module to build what it displays.
Rows are plain dicts keyed by database column names.
"""

import math
from decimal import Decimal, ROUND_HALF_UP

HIGH_BAND_MIN = 70
MEDIUM_BAND_MIN = 50


def _round_half_up(value, places=0):
    """Round like the dashboards display numbers (2.5 -> 3, not 2)."""
    value = _number(value)
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if places == 0 else float(rounded)


def _number(value):
    """Float value of a column, with NULL, junk, NaN and infinities counting as 0."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def score_percent(attempt):
    """Percentage of max for one attempt; score is taken as-is when max is unset."""
    score = _number(attempt.get('score'))
    max_score = _number(attempt.get('max_score'))
    if max_score > 0:
        return score * 100 / max_score
    return score


def score_band(percent):
    if percent >= HIGH_BAND_MIN:
        return 'high'
    if percent >= MEDIUM_BAND_MIN:
        return 'medium'
    return 'low'


def compute_summary(attempts, enrollments, total_subjects_available):
    """Summarize one learner's attempts and enrollments.

    Never raises: empty collections give zeros, and missing durations or
    progress values count as 0.
    """
    attempts = list(attempts or [])
    enrollments = list(enrollments or [])

    quizzes_taken = len(attempts)
    total_time = _number(sum(_number(a.get('duration_seconds')) for a in attempts))
    if total_time.is_integer():
        total_time = int(total_time)

    average_score = 0
    if quizzes_taken > 0:
        average_score = _round_half_up(sum(score_percent(a) for a in attempts) / quizzes_taken)

    subjects_completed = len({a.get('subject_id') for a in attempts})

    overall_progress = 0.0
    if enrollments:
        total_progress = sum(_number(e.get('progress')) for e in enrollments)
        overall_progress = _round_half_up(total_progress / len(enrollments), 1)

    return {
        'total_subjects': int(total_subjects_available or 0),
        'quizzes_taken': quizzes_taken,
        'average_score_percent': average_score,
        'subjects_completed': subjects_completed,
        'total_time_spent_seconds': total_time,
        'overall_progress_percent': overall_progress,
    }


def format_duration(seconds):
    """Render seconds as '45 sec', '2 min', '1 hr 1 min' or '1 hr'."""
    seconds = int(_number(seconds))
    if seconds and seconds < 60:
        return f"{seconds} sec"

    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    parts = []
    if hours > 0:
        parts.append(f"{hours} hr")
    if minutes > 0:
        parts.append(f"{minutes} min")
    return ' '.join(parts) or '0 min'


def time_spent_hours(seconds):
    return _round_half_up(_number(seconds) / 3600, 1)


def _completed(attempts):
    return [a for a in (attempts or []) if a.get('completed_at')]


def compute_progress_stats(attempts):
    """Quiz count, average and best percentage over completed attempts."""
    completed = _completed(attempts)
    percents = [score_percent(a) for a in completed]
    if not percents:
        return {'total_quizzes': 0, 'average_score': 0.0, 'highest_score': 0.0}
    return {
        'total_quizzes': len(percents),
        'average_score': _round_half_up(sum(percents) / len(percents), 1),
        'highest_score': _round_half_up(max(max(percents), 0), 1),
    }


def build_attempt_history(attempts):
    """Completed attempts newest first, each with its percentage and band."""
    history = []
    for attempt in sorted(_completed(attempts), key=lambda a: a['completed_at'], reverse=True):
        percent = score_percent(attempt)
        row = dict(attempt)
        row['percentage'] = _round_half_up(percent, 1)
        row['band'] = score_band(percent)
        history.append(row)
    return history


def summarize_students(students, attempts_by_student, enrollments_by_student, total_subjects_available):
    """Per-student summaries for the teacher analytics page, sorted by name."""
    summaries = []
    for student_id, full_name in students.items():
        summary = compute_summary(
            attempts_by_student.get(student_id, []),
            enrollments_by_student.get(student_id, []),
            total_subjects_available,
        )
        summary['student_id'] = student_id
        summary['full_name'] = full_name or student_id
        summary['time_spent'] = format_duration(summary['total_time_spent_seconds'])
        summaries.append(summary)
    summaries.sort(key=lambda s: ((s['full_name'] or '').strip().lower(), s['student_id']))
    return summaries
