from aiohttp import web
import logging
from typing import Optional

from registry import TrackerRegistry
from stats_manager import StatsManager

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", TrackerRegistry)

# ==========================================
# PEER DASHBOARD (Local Transfers)
# ==========================================
PEER_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>P2P Share Peer</title>
    <style>
        body { background-color: #1e1e1e; color: #00ff00; font-family: monospace; padding: 20px; }
        .card { border: 1px solid #333; padding: 15px; margin-bottom: 20px; border-radius: 5px; background: #252526; }
        h1, h2 { color: #00ff00; text-shadow: 0 0 5px #00ff00; }
        .stat-value { font-size: 1.5em; font-weight: bold; }
        ul { list-style-type: none; padding: 0; }
        li { padding: 5px 0; border-bottom: 1px solid #333; }
    </style>
</head>
<body>
    <h1>P2P Share Peer</h1>

    <div class="card">
        <h2>Traffic</h2>
        <div>Upload Rate: <span id="upload_rate" class="stat-value">0</span> KB/s</div>
        <div>Download Rate: <span id="download_rate" class="stat-value">0</span> KB/s</div>
        <div>Total Upload: <span id="total_upload">0</span> MB</div>
        <div>Total Download: <span id="total_download">0</span> MB</div>
    </div>

    <div class="card">
        <h2>Transfers</h2>
        <div>Completed: <span id="completed">0</span></div>
        <div>Failed: <span id="failed">0</span></div>
        <div>Hash mismatches: <span id="mismatches">0</span></div>
        <div>Retransmissions: <span id="retransmits">0</span></div>
        <h2>Active</h2>
        <ul id="active"></ul>
    </div>

    <script>
        function updateStats() {
            fetch('/api/stats')
                .then(response => response.json())
                .then(data => {
                    document.getElementById('upload_rate').textContent = (data.upload_rate / 1024).toFixed(2);
                    document.getElementById('download_rate').textContent = (data.download_rate / 1024).toFixed(2);
                    document.getElementById('total_upload').textContent = (data.total_upload / 1048576).toFixed(2);
                    document.getElementById('total_download').textContent = (data.total_download / 1048576).toFixed(2);
                    document.getElementById('completed').textContent = data.completed_transfers;
                    document.getElementById('failed').textContent = data.failed_transfers;
                    document.getElementById('mismatches').textContent = data.integrity_mismatches;
                    document.getElementById('retransmits').textContent = data.retransmits;

                    const list = document.getElementById('active');
                    list.innerHTML = '';
                    Object.entries(data.active_transfers).forEach(([key, t]) => {
                        const li = document.createElement('li');
                        li.textContent = `${t.direction} ${t.file} ${t.progress} (${key})`;
                        list.appendChild(li);
                    });
                });
        }
        setInterval(updateStats, 1000);
    </script>
</body>
</html>
"""

# ==========================================
# TRACKER DASHBOARD (Registry)
# ==========================================
TRACKER_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>P2P Share Tracker</title>
    <style>
        body { background-color: #000; color: #00ff00; font-family: monospace; padding: 20px; }
        .card { border: 1px solid #444; padding: 15px; margin-bottom: 20px; border-radius: 5px; background: #111; }
        h1 { color: #fff; border-bottom: 1px solid #333; padding-bottom: 10px; }
        h2 { color: #aaa; margin-top: 0; }
        table { width: 100%; border-collapse: collapse; margin-top: 10px; }
        th, td { border: 1px solid #333; padding: 8px; text-align: left; }
        th { background-color: #222; }
        .metric-big { font-size: 2em; font-weight: bold; color: #fff; }
    </style>
</head>
<body>
    <h1>TRACKER</h1>
    <div class="card">
        <h2>Summary</h2>
        <div style="display: flex; gap: 40px;">
             <div><div>Registered Peers</div><div id="peer_count" class="metric-big">0</div></div>
             <div><div>Evicted</div><div id="evicted" class="metric-big">0</div></div>
             <div><div>Uptime</div><div id="uptime" class="metric-big">0s</div></div>
        </div>
    </div>
    <div class="card">
        <h2>Registry</h2>
        <table>
            <thead><tr><th>Address</th><th>Last Refresh (s ago)</th><th>Resources</th></tr></thead>
            <tbody id="registry_body"></tbody>
        </table>
    </div>

    <script>
        function updateStats() {
            fetch('/api/stats')
                .then(response => response.json())
                .then(data => {
                    document.getElementById('peer_count').textContent = data.registered_peers;
                    document.getElementById('evicted').textContent = data.evicted_peers;
                    document.getElementById('uptime').textContent = data.uptime + 's';
                });
            fetch('/api/peers')
                .then(response => response.json())
                .then(peers => {
                    const body = document.getElementById('registry_body');
                    body.innerHTML = '';
                    peers.forEach(p => {
                        const row = document.createElement('tr');
                        const files = p.resources.map(r => `${r.fileName} (${r.size} B)`).join(', ');
                        row.innerHTML = `<td>${p.address}</td><td>${p.last_heartbeat_age}</td><td>${files}</td>`;
                        body.appendChild(row);
                    });
                });
        }
        setInterval(updateStats, 1000);
    </script>
</body>
</html>
"""


async def handle_index(request):
    # Determine which template to serve based on Role
    if REGISTRY_KEY in request.app:
        return web.Response(text=TRACKER_HTML, content_type='text/html')
    return web.Response(text=PEER_HTML, content_type='text/html')


async def handle_stats(request):
    stats = StatsManager().get_stats()
    return web.json_response(stats)


async def handle_peers(request):
    registry = request.app[REGISTRY_KEY]
    return web.json_response(registry.snapshot())


def create_app(registry: Optional[TrackerRegistry] = None) -> web.Application:
    app = web.Application()
    app.router.add_get('/', handle_index)
    app.router.add_get('/api/stats', handle_stats)
    if registry is not None:
        app[REGISTRY_KEY] = registry
        app.router.add_get('/api/peers', handle_peers)
    return app


async def start_dashboard(port=8888, registry: Optional[TrackerRegistry] = None) -> web.AppRunner:
    runner = web.AppRunner(create_app(registry))
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    logger.info(f"Dashboard started at http://localhost:{port}")
    return runner
