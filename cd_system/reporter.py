"""
A web reporter built with Flask. It reads the supervisor's in-memory
deployment state and displays the live backend and the recent deployment
history on a web page. Nothing is persisted.
"""

import logging
import threading
from datetime import datetime

from flask import Flask, abort, current_app, render_template_string

logger = logging.getLogger(__name__)

HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Deployment Status</title>
    <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.1.3/dist/css/bootstrap.min.css" rel="stylesheet">
    <style>
        body { background-color: #f8f9fa; padding: 20px; }
        .container { max-width: 1200px; margin: 0 auto; }
        .panel { background: white; border-radius: 8px; padding: 20px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
        pre {
            padding: 15px;
            background: #f8f9fa;
            border: 1px solid #eee;
            border-radius: 4px;
            white-space: pre-wrap;
            word-wrap: break-word;
        }
        a { text-decoration: none; }
        .badge { font-size: 0.9em; }
    </style>
</head>
<body>
    <div class="container">
        <h1 class="mb-4">Deployment Status</h1>
        <div class="panel mb-4">
            {% if live.commit_id %}
                <p><strong>Live commit:</strong> <code>{{ live.commit_id }}</code></p>
                <p><strong>Backend:</strong> port {{ live.backend_port }}, PID {{ live.backend_pid }}, since {{ live.started_at | timestamp }}</p>
                {% if live.public_port %}
                <p><strong>Forwarder:</strong> {{ live.public_port }} &rarr; {{ live.target_port }} ({{ live.active_connections }} open connections)</p>
                {% else %}
                <div class="alert alert-warning">Public port is not bound</div>
                {% endif %}
            {% else %}
                <div class="alert alert-warning">No backend is live</div>
            {% endif %}
        </div>

        <div class="panel">
            {% if deployments %}
                <div class="list-group">
                    {% for d in deployments %}
                    <a href="/deployments/{{ d.commit_id }}" class="list-group-item list-group-item-action d-flex justify-content-between align-items-center">
                        <span>
                            <span class="badge bg-{{ badges.get(d.status, 'secondary') }} me-2">{{ d.status }}</span>
                            {{ d.commit_id }}{% if d.port %} on port {{ d.port }}{% endif %}
                        </span>
                        <small class="text-muted">{{ d.started_at | timestamp }}</small>
                    </a>
                    {% if detail and d.error %}
                    <pre><code>{{ d.error }}</code></pre>
                    {% endif %}
                    {% endfor %}
                </div>
            {% else %}
                <div class="alert alert-info">No deployments yet</div>
            {% endif %}
        </div>
    </div>
</body>
</html>
"""

BADGES = {"live": "success", "building": "primary", "retired": "secondary", "failed": "danger"}


def create_app(state) -> Flask:
    """Build the status app around a DeploymentState"""
    app = Flask(__name__)
    app.config["DEPLOYMENT_STATE"] = state

    @app.template_filter("timestamp")
    def timestamp(value):
        if value is None:
            return "-"
        return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")

    def render(live, deployments, detail=False):
        return render_template_string(
            HTML_TEMPLATE, live=live, deployments=deployments, badges=BADGES, detail=detail)

    @app.route("/")
    def index():
        live = current_app.config["DEPLOYMENT_STATE"].snapshot()
        return render(live, live["history"])

    @app.route("/deployments/<commit_id>")
    def show_deployment(commit_id):
        live = current_app.config["DEPLOYMENT_STATE"].snapshot()
        attempts = [d for d in live["history"] if d.commit_id == commit_id]
        if not attempts:
            abort(404)
        return render(live, attempts, detail=True)

    @app.errorhandler(404)
    def page_not_found(e):
        return render_template_string("""
            <div class="container mt-5">
                <div class="alert alert-danger">
                    <h4>Commit not found</h4>
                    <p>No deployment of this commit is recorded</p>
                </div>
            </div>
        """), 404

    return app


def serve_in_background(state, host: str, port: int) -> threading.Thread:
    """Run the status page in a daemon thread next to the supervisor"""
    app = create_app(state)
    thread = threading.Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "use_reloader": False, "threaded": True},
        name="reporter",
        daemon=True,
    )
    thread.start()
    logger.info(f"Status page on http://{host}:{port}/")
    return thread
