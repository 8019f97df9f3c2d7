'''
Define variables used across the entire applications
'''


SPEED_LIMIT_KMH = 90.0         # km/h, default posted limit for trucks
SPEED_TOLERANCE_KMH = 10.0     # km/h, absorbs GPS/CAN jitter
HIGH_SPEED_KMH = 120.0         # km/h, above this a speeding alert is "high"

ROUTE_DEVIATION_M = 5_000.0    # metres away from the planned route
UNAUTHORIZED_SPEED_KMH = 5.0   # km/h, moving without an assigned trip

EARTH_RADIUS_M = 6_371_000.0

# channels a delivery intent is addressed to, by alert severity
DELIVERY_CHANNELS = {
    "low":      ["push"],
    "medium":   ["push"],
    "high":     ["push", "email", "whatsapp"],
    "critical": ["push", "email", "whatsapp"],
}

# EU 561/2006 defaults, hours
MAX_DAILY_DRIVING_H = 9
MAX_EXTENDED_DAILY_DRIVING_H = 10
MAX_EXTENDED_DAYS_PER_WEEK = 2
MAX_CONTINUOUS_DRIVING_H = 4.5
MIN_BREAK_H = 0.75
MIN_DAILY_REST_H = 11
MIN_REDUCED_DAILY_REST_H = 9
MAX_REDUCED_REST_DAYS_PER_WEEK = 3
MIN_WEEKLY_REST_H = 45
MIN_REDUCED_WEEKLY_REST_H = 24
MAX_WEEKLY_DRIVING_H = 56
MAX_BIWEEKLY_DRIVING_H = 90
MAX_DAILY_WORK_H = 13
MAX_WEEKLY_WORK_H = 60

# working-time alerts: share of the daily limit, hours before the continuous limit
DRIVING_WARNING_RATIO = 0.9
BREAK_WARNING_LEAD_H = 0.5

# Traccar reports speed in knots
KNOTS_TO_KMH = 1.852
