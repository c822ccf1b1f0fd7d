import os

from mmessenger import create_app

app = create_app()
socketio = app.extensions['mmessenger']['socketio']


# ============================================================================
# RUN APPLICATION
# ============================================================================

if __name__ == "__main__":
    host = "0.0.0.0"
    port = int(os.getenv('FLASK_PORT', app.config['FLASK_PORT']))
    print(f"\n{'='*60}")
    print(f"Server running: http://localhost:{port}")
    print(f"API endpoints: http://localhost:{port}/api/messenger")
    print(f"Socket.IO namespace: /messenger")
    print(f"{'='*60}\n")
    socketio.run(app, debug=True, host=host, port=port, use_reloader=False, allow_unsafe_werkzeug=True)
