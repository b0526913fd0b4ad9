'''
This file is the HTTP layer which declares the functions that serve the routes for the Entitlement
Backend. These routes are registered onto a Flask application which enable the endpoints for the
server.

The role of this layer is to intercept the HTTP request and hand the raw body to the backend. The
backend is responsible for validating the purchase proof against the App Store. If successful the
entitlement record is returned back to this layer and piped back to the user in the HTTP response,
otherwise the status code decided by the backend is returned along with the error messages.
'''

import flask
import typing

import base
import backend
import platform_apple

# Key stored in the flask app config dictionary to retrieve the Apple core within a request
CONFIG_PLATFORM_APPLE_CORE_KEY = 'entitlement_backend_platform_apple_core'

# Name of the endpoints exposed on the server
ROUTE_APPSTORE                 = '/appstore'

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts Entitlement Backend client requests.
flask_blueprint = flask.Blueprint('entitlement-backend-blueprint', __name__)

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    result        = flask.jsonify({ 'status': http_status, 'msg': msg})
    result.status = http_status
    return result

def html_good_response(dict_result: typing.Any) -> flask.Response:
    result = flask.jsonify({ 'status': 200, 'result': dict_result})
    return result

def init(testing_mode: bool, core: platform_apple.Core) -> flask.Flask:
    result                                         = flask.Flask(__name__)
    result.config['TESTING']                       = testing_mode
    result.config[CONFIG_PLATFORM_APPLE_CORE_KEY]  = core
    result.register_blueprint(flask_blueprint)
    return result

def core_from_flask_request_context(flask_app: flask.Flask) -> platform_apple.Core:
    assert CONFIG_PLATFORM_APPLE_CORE_KEY in flask_app.config
    result = typing.cast(platform_apple.Core, flask_app.config[CONFIG_PLATFORM_APPLE_CORE_KEY])
    return result

@flask_blueprint.route(ROUTE_APPSTORE, methods=['POST'])
def appstore() -> flask.Response:
    core   = core_from_flask_request_context(flask.current_app)
    err    = base.ErrorSink()
    record = backend.resolve_entitlement(core=core, body=flask.request.get_data(), err=err)
    if record is None:
        assert err.has()
        return html_bad_response(err.http_status, err.msg_list)

    result = html_good_response(record.to_dict())
    return result
