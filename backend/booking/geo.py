# booking/geo.py
#
# Great-circle distance helpers for the "doctors near me" search.

import math

EARTH_RADIUS_KM = 6371


def calculate_distance(lat1, lng1, lat2, lng2):
    """Haversine distance in kilometres, rounded to 2 decimals."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def is_within_radius(lat1, lng1, lat2, lng2, radius_km):
    return calculate_distance(lat1, lng1, lat2, lng2) <= radius_km


def format_distance(distance_km):
    # "500m" below one kilometre, "5.5km" above
    if distance_km < 1:
        return f"{round(distance_km * 1000)}m"
    return f"{distance_km:g}km"
