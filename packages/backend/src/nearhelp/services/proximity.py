"""Proximity lookup: which users should hear about a post near them.

Learn: Every user carries a last-known location and a notification
radius (km). A user is "near" a post when the great-circle distance
between the two points is within that user's own radius. Distances use
the Haversine formula on a spherical Earth, which is well within the
accuracy of browser geolocation.
"""

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.db.models import Post, User

# Earth's mean radius in kilometers
EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in kilometers."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def bounding_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing a circle around a point."""
    dlat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return lat - dlat, lat + dlat, -180.0, 180.0
    dlon = min(math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)), 180.0)
    return lat - dlat, lat + dlat, lon - dlon, lon + dlon


async def users_near_post(db: AsyncSession, post: Post) -> list[User]:
    """Users (other than the owner) whose own radius covers the post.

    The SQL filter is a coarse bounding box sized by the widest radius
    any located user has picked; the exact per-user radius is checked in
    Python.
    """
    if post.latitude is None or post.longitude is None:
        return []

    widest_km = (
        await db.execute(
            select(func.max(User.notification_radius_km)).where(
                User.id != post.user_id,
                User.latitude.is_not(None),
                User.longitude.is_not(None),
            )
        )
    ).scalar_one_or_none()
    if widest_km is None:
        return []

    min_lat, max_lat, min_lon, max_lon = bounding_box(
        post.latitude, post.longitude, widest_km
    )
    query = select(User).where(
        User.id != post.user_id,
        User.latitude.is_not(None),
        User.longitude.is_not(None),
        User.latitude.between(min_lat, max_lat),
    )
    if min_lon >= -180.0 and max_lon <= 180.0:
        query = query.where(User.longitude.between(min_lon, max_lon))
    result = await db.execute(query.order_by(User.id))

    return [
        user
        for user in result.scalars().all()
        if haversine_km(post.latitude, post.longitude, user.latitude, user.longitude)
        <= user.notification_radius_km
    ]
