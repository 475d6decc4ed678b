from flask import Blueprint

bp = Blueprint("hotels", __name__)

from . import routes  # noqa: E402,F401
