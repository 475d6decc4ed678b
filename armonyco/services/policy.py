from functools import wraps
from flask import abort, session, request
from flask_login import current_user
from armonyco.extensions import db
from armonyco.models.org_membership import OrgMembership

def _current_org_id(view_kwargs=None):
    """Organization the request acts on: URL, then JSON body, then the user's session/default org."""
    view_kwargs = view_kwargs or {}
    oid = view_kwargs.get("org_id") or view_kwargs.get("organization_id")
    if not oid and request.is_json:
        body = request.get_json(silent=True) or {}
        oid = body.get("organizationId")
    if not oid:
        oid = session.get("current_org_id")
    if not oid and getattr(current_user, "is_authenticated", False):
        oid = getattr(current_user, "org_id", None)
    try:
        return int(oid) if oid else None
    except (TypeError, ValueError):
        return None

def _membership(org_id):
    return db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=current_user.id).one_or_none()

def require_member(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return _abort_smart(401)
        org_id = _current_org_id(kwargs)
        if not org_id:
            return _abort_smart(401)
        m = _membership(org_id)
        if not m:
            return _abort_smart(404)  # anti-enumeration
        return fn(*args, **kwargs)
    return _wrap

def role_required(*roles):
    def deco(fn):
        @wraps(fn)
        def _wrap(*args, **kwargs):
            if not current_user.is_authenticated:
                return _abort_smart(401)
            org_id = _current_org_id(kwargs)
            if not org_id:
                return _abort_smart(401)
            m = _membership(org_id)
            if not m:
                return _abort_smart(404)
            if m.role not in roles:
                return _abort_smart(403)
            return fn(*args, **kwargs)
        return _wrap
    return deco

def _abort_smart(code: int):
    # JSON API: anything that isn't explicitly asking for HTML gets a JSON error
    accept = (request.headers.get("Accept") or "").lower()
    if "text/html" not in accept or request.is_json:
        from flask import jsonify
        return jsonify({"error": {401: "unauthorized", 403: "forbidden", 404: "not_found"}[code], "code": code}), code
    abort(code)
