# booking/permissions.py

from rest_framework.permissions import BasePermission

from .models import UserProfile


def get_role(user):
    """Role from the user's profile; superusers without a profile count as admin."""
    if user is None or not user.is_authenticated:
        return None
    if hasattr(user, "profile"):
        return user.profile.role
    if user.is_superuser:
        return UserProfile.ROLE_ADMIN
    return None


def is_admin(user):
    return bool(user and user.is_authenticated and (user.is_superuser or get_role(user) == UserProfile.ROLE_ADMIN))


class IsAdminRole(BasePermission):
    message = "Admin access required"

    def has_permission(self, request, view):
        return is_admin(request.user)


class IsDoctorRole(BasePermission):
    message = "Doctors only"

    def has_permission(self, request, view):
        return get_role(request.user) == UserProfile.ROLE_DOCTOR
