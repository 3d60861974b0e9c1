"""Errors raised by permission-checked operations."""


class TaskminderError(Exception):
    pass


class NotFoundError(TaskminderError):
    pass


class PermissionDeniedError(TaskminderError):
    pass


class NotGroupMemberError(PermissionDeniedError):
    pass


class InviteCodeError(TaskminderError):
    pass
