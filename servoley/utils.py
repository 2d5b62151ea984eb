from flask import jsonify, request


def success(data=None, message=None, status=200):
    """Build the {"success": true, ...} envelope."""
    body = {'success': True}
    if message:
        body['message'] = message
    if data is not None:
        body['data'] = data
    return jsonify(body), status


def client_ip():
    return request.remote_addr
