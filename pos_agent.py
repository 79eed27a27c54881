"""
Local HTTP agent exposing the offline core to a POS front end.

All responses are JSON with a `status` field. Transport failures map to 502,
rejected backend sessions to 401 and a reset local store to 503 so the front
end knows to reload.
"""
from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify, request

from pos_errors import AuthorizationError, CoreError, ErrorKind, OrderNotFound, SchemaDriftError, TransportError
from pos_orders import OrderStatus


def _order_view(order) -> Dict[str, Any]:
    blob = order.to_blob()
    blob.pop("payload", None)
    return blob


def create_app(ctx) -> Flask:
    app = Flask(__name__)
    app.config["POS_CONTEXT"] = ctx

    @app.errorhandler(AuthorizationError)
    def _auth_error(exc):
        return jsonify({'status': 'error', 'kind': ErrorKind.AUTHORIZATION.value, 'message': str(exc)}), 401

    @app.errorhandler(TransportError)
    def _transport_error(exc):
        return jsonify({'status': 'error', 'kind': exc.kind.value, 'message': str(exc)}), 502

    @app.errorhandler(SchemaDriftError)
    def _schema_error(exc):
        return jsonify({'status': 'error', 'kind': exc.kind.value, 'message': str(exc)}), 503

    @app.errorhandler(OrderNotFound)
    def _not_found(exc):
        return jsonify({'status': 'error', 'kind': exc.kind.value, 'message': str(exc)}), 404

    @app.errorhandler(CoreError)
    def _core_error(exc):
        app.logger.warning("Request failed: %s", exc)
        return jsonify({'status': 'error', 'kind': exc.kind.value, 'message': str(exc)}), 502

    @app.route('/api/health')
    def api_health():
        return jsonify({
            'status': 'success',
            'online': ctx.transport.check_connection(),
            'pending_orders': ctx.orders.pending_count(),
            'schema_version': ctx.store.version,
        })

    @app.route('/api/cache/load', methods=['POST'])
    def api_cache_load():
        data = request.get_json(silent=True) or {}
        session_id = data.get('session_id')
        if session_id in (None, ''):
            return jsonify({'status': 'error', 'message': 'session_id is required'}), 400
        loaded = ctx.cache.load(session_id, force=bool(data.get('force')),
                                specific_model=data.get('model') or None)
        return jsonify({'status': 'success', 'models': {m: len(rs) for m, rs in loaded.items()}})

    @app.route('/api/cache/status')
    def api_cache_status():
        meta = ctx.cache.metadata()
        session_id = request.args.get('session_id', type=int)
        return jsonify({
            'status': 'success',
            'metadata': meta.to_blob() if meta else None,
            'fresh': ctx.cache.is_fresh(session_id) if session_id is not None else None,
            'complete': ctx.cache.check_data_exists(),
        })

    @app.route('/api/cache/currency')
    def api_cache_currency():
        return jsonify({'status': 'success', 'currency': ctx.cache.get_currency()})

    @app.route('/api/cache/<model>')
    def api_cache_model(model):
        rs = ctx.cache.get_model_data(model)
        return jsonify({'status': 'success', 'model': model, 'records': rs.records,
                        'fields': rs.field_meta, 'relations': rs.relation_meta})

    @app.route('/api/orders', methods=['POST'])
    def api_orders_create():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({'status': 'error', 'message': 'Invalid JSON payload'}), 400
        try:
            order = ctx.orders.enqueue(payload)
        except ValueError as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 400
        return jsonify({'status': 'queued', 'order': _order_view(order)}), 201

    @app.route('/api/orders')
    def api_orders_list():
        status = request.args.get('status')
        if status:
            try:
                orders = ctx.orders.by_status(OrderStatus(status))
            except ValueError:
                return jsonify({'status': 'error', 'message': f'Unknown status {status}'}), 400
        else:
            orders = ctx.orders.all()
        return jsonify({'status': 'success', 'orders': [_order_view(o) for o in orders]})

    @app.route('/api/orders/<local_id>')
    def api_orders_get(local_id):
        order = ctx.orders.find(local_id)
        if order is None:
            raise OrderNotFound(f"Order not found: {local_id}")
        return jsonify({'status': 'success', 'order': order.to_blob(),
                        'refund_info': ctx.orders.refund_info(order.local_id)})

    @app.route('/api/orders/<local_id>/sync', methods=['POST'])
    def api_orders_sync(local_id):
        data = request.get_json(silent=True) or {}
        if data.get('force'):
            result = ctx.sync.force_resync(local_id)
        else:
            result = ctx.sync.sync_one(local_id)
        code = 200 if result.ok else (404 if result.kind == ErrorKind.NOT_FOUND else 502)
        return jsonify({'status': 'success' if result.ok else 'error', 'result': result.to_dict()}), code

    @app.route('/api/sync', methods=['POST'])
    def api_sync():
        return jsonify({'status': 'success', **ctx.sync.check_and_sync_if_online()})

    @app.route('/api/session/ensure', methods=['POST'])
    def api_session_ensure():
        data = request.get_json(silent=True) or {}
        config_id = data.get('config_id') or ctx.config.config_id
        if not config_id:
            return jsonify({'status': 'error', 'message': 'config_id is required'}), 400
        outcome = ctx.sessions.ensure_open(int(config_id), data.get('user_id'))
        return jsonify({'status': 'success' if outcome.ok else 'error', 'outcome': outcome.to_dict()})

    @app.route('/api/session/<int:session_id>/close', methods=['POST'])
    def api_session_close(session_id):
        data = request.get_json(silent=True) or {}
        outcome = ctx.sessions.close(session_id, data.get('user_id'))
        if outcome.kind == ErrorKind.PERMISSION_DENIED:
            return jsonify({'status': 'error', 'outcome': outcome.to_dict()}), 403
        if outcome.kind == ErrorKind.NOT_FOUND:
            return jsonify({'status': 'error', 'outcome': outcome.to_dict()}), 404
        return jsonify({'status': 'success' if outcome.ok else 'error', 'outcome': outcome.to_dict()})

    return app
