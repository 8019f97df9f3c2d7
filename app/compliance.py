# app/compliance.py
import json
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

import variables as v
from logging_config import get_logger
from schemas import (AlertType, Compliance, ComplianceStatus, DailyRecord, DayState, LatLng,
                     RuleMatch, Severity, Violation, ViolationType, hours)

logger = get_logger("compliance", "compliance.log")


class RegulationThresholds(BaseModel):
    """
    Working-time limits in hours. Versioned data: a jurisdiction or a
    regulation change is a new JSON file, not a code change.
    """
    model_config = ConfigDict(frozen=True)

    version: str = "EU-561/2006"
    jurisdiction: str = "EU"

    max_daily_driving: float = v.MAX_DAILY_DRIVING_H
    max_extended_daily_driving: float = v.MAX_EXTENDED_DAILY_DRIVING_H
    max_extended_days_per_week: int = v.MAX_EXTENDED_DAYS_PER_WEEK
    max_continuous_driving: float = v.MAX_CONTINUOUS_DRIVING_H
    min_break: float = v.MIN_BREAK_H
    min_daily_rest: float = v.MIN_DAILY_REST_H
    min_reduced_daily_rest: float = v.MIN_REDUCED_DAILY_REST_H
    max_reduced_rest_days_per_week: int = v.MAX_REDUCED_REST_DAYS_PER_WEEK
    min_weekly_rest: float = v.MIN_WEEKLY_REST_H
    min_reduced_weekly_rest: float = v.MIN_REDUCED_WEEKLY_REST_H
    max_weekly_driving: float = v.MAX_WEEKLY_DRIVING_H
    max_biweekly_driving: float = v.MAX_BIWEEKLY_DRIVING_H
    max_daily_work: float = v.MAX_DAILY_WORK_H
    max_weekly_work: float = v.MAX_WEEKLY_WORK_H

    driving_warning_ratio: float = v.DRIVING_WARNING_RATIO
    break_warning_lead: float = v.BREAK_WARNING_LEAD_H


def load_thresholds(path: Optional[str] = None) -> RegulationThresholds:
    if not path:
        return RegulationThresholds()
    with open(path, encoding="utf-8") as fh:
        thresholds = RegulationThresholds.model_validate(json.load(fh))
    logger.info(
        f"Loaded regulation thresholds version={thresholds.version} "
        f"jurisdiction={thresholds.jurisdiction} from {path}"
    )
    return thresholds


SCORE_PENALTY = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}


def compliance_score(violations: Iterable[Violation]) -> int:
    score = 100 - sum(SCORE_PENALTY[x.severity] for x in violations)
    return max(0, score)


def build_compliance(violations: List[Violation]) -> Compliance:
    return Compliance(
        status=ComplianceStatus.VIOLATION if violations else ComplianceStatus.COMPLIANT,
        violations=violations,
        score=compliance_score(violations),
    )


def _violation(kind: ViolationType, severity: Severity, message: str,
               actual: float, limit: float) -> Violation:
    return Violation(
        type=kind,
        severity=severity,
        message=message,
        actual=round(actual, 4),
        limit=limit,
    )


# =====================================================================
# Daily window
# =====================================================================
def classify_day(record: DailyRecord, thresholds: RegulationThresholds,
                 finalized: bool = False) -> Compliance:
    """
    Judge one day's totals. Rest can still be taken until the day is over,
    so the daily-rest minimum is only applied to finalized days.
    """
    t = thresholds
    violations: List[Violation] = []

    driving = hours(record.total_driving)
    if driving > t.max_daily_driving:
        if driving > t.max_extended_daily_driving:
            violations.append(_violation(
                ViolationType.EXCEEDED_DAILY_DRIVING, Severity.CRITICAL,
                f"Daily driving {driving:.2f}h exceeds the extended limit of {t.max_extended_daily_driving}h",
                driving, t.max_daily_driving,
            ))
        else:
            violations.append(_violation(
                ViolationType.EXCEEDED_DAILY_DRIVING, Severity.MEDIUM,
                f"Daily driving {driving:.2f}h exceeds {t.max_daily_driving}h "
                f"(extension to {t.max_extended_daily_driving}h, max {t.max_extended_days_per_week}x/week)",
                driving, t.max_daily_driving,
            ))

    continuous = hours(record.max_continuous_driving)
    if continuous > t.max_continuous_driving:
        violations.append(_violation(
            ViolationType.EXCEEDED_CONTINUOUS_DRIVING, Severity.HIGH,
            f"Continuous driving {continuous:.2f}h without a break exceeds {t.max_continuous_driving}h",
            continuous, t.max_continuous_driving,
        ))

    if record.short_breaks:
        shortest = hours(min(record.short_breaks))
        violations.append(_violation(
            ViolationType.INSUFFICIENT_BREAK, Severity.MEDIUM,
            f"Break of {shortest:.2f}h after {t.max_continuous_driving}h of driving "
            f"is below the minimum of {t.min_break}h",
            shortest, t.min_break,
        ))

    work = hours(record.total_work)
    if work > t.max_daily_work:
        violations.append(_violation(
            ViolationType.EXCEEDED_DAILY_WORK, Severity.HIGH,
            f"Daily working time {work:.2f}h exceeds {t.max_daily_work}h",
            work, t.max_daily_work,
        ))

    rest = hours(record.total_rest)
    if finalized and record.activities and rest < t.min_daily_rest:
        if rest < t.min_reduced_daily_rest:
            violations.append(_violation(
                ViolationType.INSUFFICIENT_DAILY_REST, Severity.CRITICAL,
                f"Daily rest {rest:.2f}h is below the reduced minimum of {t.min_reduced_daily_rest}h",
                rest, t.min_reduced_daily_rest,
            ))
        else:
            violations.append(_violation(
                ViolationType.INSUFFICIENT_DAILY_REST, Severity.MEDIUM,
                f"Reduced daily rest {rest:.2f}h (regular minimum {t.min_daily_rest}h, "
                f"max {t.max_reduced_rest_days_per_week}x/week)",
                rest, t.min_daily_rest,
            ))

    return build_compliance(violations)


# =====================================================================
# Weekly / biweekly window: the same checks on summed totals
# =====================================================================
def classify_week(days: List[DailyRecord], thresholds: RegulationThresholds,
                  previous_week_driving_h: float = 0.0,
                  finalized: bool = False) -> Compliance:
    t = thresholds
    violations: List[Violation] = []

    driving = sum(hours(d.total_driving) for d in days)
    work = sum(hours(d.total_work) for d in days)
    rest = sum(hours(d.total_rest) for d in days)
    active_days = [d for d in days if d.activities]

    if driving > t.max_weekly_driving:
        violations.append(_violation(
            ViolationType.EXCEEDED_WEEKLY_DRIVING, Severity.CRITICAL,
            f"Weekly driving {driving:.2f}h exceeds {t.max_weekly_driving}h",
            driving, t.max_weekly_driving,
        ))

    biweekly = driving + previous_week_driving_h
    if biweekly > t.max_biweekly_driving:
        violations.append(_violation(
            ViolationType.EXCEEDED_BIWEEKLY_DRIVING, Severity.CRITICAL,
            f"Driving over two consecutive weeks {biweekly:.2f}h exceeds {t.max_biweekly_driving}h",
            biweekly, t.max_biweekly_driving,
        ))

    if work > t.max_weekly_work:
        violations.append(_violation(
            ViolationType.EXCEEDED_WEEKLY_WORK, Severity.HIGH,
            f"Weekly working time {work:.2f}h exceeds {t.max_weekly_work}h",
            work, t.max_weekly_work,
        ))

    extended = sum(1 for d in days if hours(d.total_driving) > t.max_daily_driving)
    if extended > t.max_extended_days_per_week:
        violations.append(_violation(
            ViolationType.EXTENDED_DRIVING_DAYS_EXCEEDED, Severity.HIGH,
            f"Extended driving used on {extended} days (max {t.max_extended_days_per_week})",
            extended, t.max_extended_days_per_week,
        ))

    # only days that are over can have used a reduced rest
    reduced = sum(
        1 for d in active_days
        if d.state == DayState.FINALIZED and hours(d.total_rest) < t.min_daily_rest
    )
    if reduced > t.max_reduced_rest_days_per_week:
        violations.append(_violation(
            ViolationType.REDUCED_REST_DAYS_EXCEEDED, Severity.HIGH,
            f"Reduced daily rest taken on {reduced} days (max {t.max_reduced_rest_days_per_week})",
            reduced, t.max_reduced_rest_days_per_week,
        ))

    if finalized and active_days and rest < t.min_weekly_rest:
        severity = Severity.CRITICAL if rest < t.min_reduced_weekly_rest else Severity.MEDIUM
        limit = t.min_reduced_weekly_rest if severity == Severity.CRITICAL else t.min_weekly_rest
        violations.append(_violation(
            ViolationType.INSUFFICIENT_WEEKLY_REST, severity,
            f"Weekly rest {rest:.2f}h is below {limit}h",
            rest, limit,
        ))

    return build_compliance(violations)


# =====================================================================
# Working-time alerts for the day in progress
# =====================================================================
def working_time_matches(record: DailyRecord, thresholds: RegulationThresholds,
                         vehicle_id: Optional[str] = None,
                         location: Optional[LatLng] = None) -> List[RuleMatch]:
    """Warnings raised while limits can still be respected; finalized days get none."""
    if record.state != DayState.IN_PROGRESS:
        return []

    t = thresholds
    matches: List[RuleMatch] = []

    driving = hours(record.total_driving)
    if driving >= t.driving_warning_ratio * t.max_daily_driving:
        matches.append(RuleMatch(
            type=AlertType.DRIVING_LIMIT_WARNING,
            severity=Severity.HIGH,
            vehicle_id=vehicle_id,
            driver_id=record.driver_id,
            title="Approaching daily driving limit",
            description=f"Driver {record.driver_id} has driven {driving:.2f}h of {t.max_daily_driving}h today",
            location=location,
        ))

    continuous = hours(record.continuous_driving)
    if continuous >= t.max_continuous_driving - t.break_warning_lead:
        matches.append(RuleMatch(
            type=AlertType.REST_REQUIRED,
            severity=Severity.CRITICAL,
            vehicle_id=vehicle_id,
            driver_id=record.driver_id,
            title="Break required",
            description=(
                f"Driver {record.driver_id} has driven {continuous:.2f}h without a break "
                f"(limit {t.max_continuous_driving}h)"
            ),
            location=location,
        ))

    return matches
