"""
Role based capabilities

One table answers "may this role do that". Route handlers never compare
role strings themselves; they depend on main.require(action).
"""

ROLE_ADMIN = "admin"
ROLE_INSTRUCTOR = "instructeur"
ROLE_STUDENT = "eleve"

ROLES = (ROLE_ADMIN, ROLE_INSTRUCTOR, ROLE_STUDENT)

STAFF = frozenset({ROLE_ADMIN, ROLE_INSTRUCTOR})

PERMISSIONS = {
    "user:create": frozenset({ROLE_ADMIN}),
    "user:update_status": frozenset({ROLE_ADMIN}),
    "dashboard:student": frozenset({ROLE_STUDENT}),
    "registration:read": STAFF,
    "registration:update_status": frozenset({ROLE_ADMIN}),
    "session:read": frozenset(ROLES),
    "session:write": STAFF,
    "course:upcoming": frozenset({ROLE_STUDENT}),
    "course:write": STAFF,
    "course:read_any_student": STAFF,
    "news:read": frozenset(ROLES),
    "news:write": STAFF,
    "news:stats": STAFF,
    "news:edit_any": frozenset({ROLE_ADMIN}),
    "dashboard:admin": frozenset({ROLE_ADMIN}),
    "student:self": frozenset({ROLE_STUDENT}),
    "student_profile:read_any": STAFF,
    "student_profile:edit_training": STAFF,
    "exam_result:write": STAFF,
}


def can(role, action):
    """True when `role` holds `action`. Unknown actions are denied."""
    return role in PERMISSIONS.get(action, frozenset())
