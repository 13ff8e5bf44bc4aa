# core/permissions.py

from rest_framework import permissions

class IsAuthenticatedAndHelper(permissions.BasePermission):
    """Allow access only to authenticated users with the role 'helper'."""
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.role == 'helper')

class IsPlatformAdmin(permissions.BasePermission):
    """Staff, superusers and users with the role 'admin'."""
    message = "Admin access required"

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.is_platform_admin)
