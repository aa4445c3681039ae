"""Single-page browser UI served at ``/``."""

from __future__ import annotations


def get_page_html() -> str:
    """Return the full self-contained HTML page."""
    return _PAGE_HTML


_PAGE_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Symfony Dump Viewer</title>
<link rel="stylesheet" href="/symfony-dump/css/htmlDescriptor.css" onerror="this.remove()">
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #c9d1d9; --text-dim: #8b949e; --accent: #58a6ff;
    --green: #3fb950; --yellow: #d29922; --red: #f85149;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body {
    font-family: 'SF Mono', 'Fira Code', 'Cascadia Code', monospace;
    background: var(--bg); color: var(--text); font-size: 13px;
    line-height: 1.5;
  }
  .container { max-width: 1200px; margin: 0 auto; padding: 16px; }

  /* Header */
  header {
    display: flex; align-items: center; gap: 12px;
    padding-bottom: 12px; border-bottom: 1px solid var(--border);
    margin-bottom: 12px;
  }
  header h1 { font-size: 16px; font-weight: 600; color: var(--accent); }
  .dot { width: 8px; height: 8px; border-radius: 50%; background: var(--text-dim); }
  .dot.connected { background: var(--green); }
  .dot.connecting, .dot.reconnecting { background: var(--yellow); }
  .dot.disconnected, .dot.error { background: var(--red); }
  #conn-text { color: var(--text-dim); font-size: 12px; }
  #server-info { color: var(--text-dim); font-size: 12px; margin-left: auto; }
  button {
    background: transparent; border: 1px solid var(--border); color: var(--text);
    border-radius: 4px; padding: 4px 10px; font-size: 11px; font-weight: 600;
    cursor: pointer; font-family: inherit;
  }
  button:hover { border-color: var(--accent); color: var(--accent); }
  button.danger:hover { border-color: var(--red); color: var(--red); }
  #retry-btn { display: none; border-color: var(--yellow); color: var(--yellow); }

  /* Toolbar */
  .toolbar { display: flex; gap: 8px; align-items: center; margin-bottom: 12px; flex-wrap: wrap; }
  .tab { border-radius: 12px; }
  .tab.active { background: var(--accent); color: var(--bg); border-color: var(--accent); }
  .tab .count { opacity: 0.7; margin-left: 4px; }
  #search {
    flex: 1; min-width: 180px; background: var(--surface); color: var(--text);
    border: 1px solid var(--border); border-radius: 4px; padding: 5px 8px;
    font-family: inherit; font-size: 12px;
  }

  /* Dumps */
  .dump {
    background: var(--surface); border: 1px solid var(--border);
    border-radius: 6px; margin-bottom: 10px; overflow: hidden;
  }
  .dump-head {
    display: flex; gap: 12px; padding: 6px 12px; font-size: 11px;
    color: var(--text-dim); border-bottom: 1px solid var(--border);
  }
  .dump-head .src { color: var(--accent); }
  .dump-head .cat { text-transform: uppercase; letter-spacing: 0.05em; }
  .dump-head .time { margin-left: auto; }
  .dump-body { padding: 8px 12px; overflow-x: auto; }
  .sf-dump-fallback pre { white-space: pre-wrap; }
  .empty { text-align: center; color: var(--text-dim); padding: 48px 0; }
  #error-bar {
    display: none; background: rgba(248, 81, 73, 0.12); border: 1px solid var(--red);
    color: var(--red); border-radius: 4px; padding: 6px 10px; margin-bottom: 12px;
  }
</style>
</head>
<body>
<div class="container">
  <header>
    <span class="dot connecting" id="conn-dot"></span>
    <h1>Symfony Dump Viewer</h1>
    <span id="conn-text">Connecting...</span>
    <button id="retry-btn">Retry</button>
    <span id="server-info"></span>
  </header>

  <div id="error-bar"></div>

  <div class="toolbar">
    <div id="tabs"></div>
    <input id="search" type="search" placeholder="Search dumps, files, functions...">
    <button id="export-btn">Export</button>
    <button id="clear-btn" class="danger">Clear</button>
  </div>

  <div id="dumps"><div class="empty">Waiting for dumps...</div></div>
</div>

<script src="/symfony-dump/js/htmlDescriptor.js" onerror="this.remove()"></script>
<script>
(function() {
  const $ = id => document.getElementById(id);
  const CATEGORIES = [
    ['all', 'All'], ['dumps', 'Dumps'], ['queries', 'Queries'], ['logs', 'Logs'],
    ['requests', 'Requests'], ['views', 'Views'], ['jobs', 'Jobs'],
  ];
  const MAX_RECONNECT_ATTEMPTS = 10;
  const HEARTBEAT_MS = 30000;
  const MAX_DUMPS = 1000;

  let ws = null;
  let dumps = [];
  let activeCategory = 'all';
  let searchTerm = '';
  let reconnectAttempts = 0;
  let reconnectTimer = null;
  let heartbeatTimer = null;

  // -- connection state ------------------------------------------------

  function setConnState(state, text) {
    $('conn-dot').className = 'dot ' + state;
    $('conn-text').textContent = text;
    $('retry-btn').style.display = state === 'error' ? 'inline-block' : 'none';
  }

  function showError(message) {
    const bar = $('error-bar');
    bar.textContent = message;
    bar.style.display = 'block';
    setTimeout(() => { bar.style.display = 'none'; }, 8000);
  }

  function connect() {
    const proto = location.protocol === 'https:' ? 'wss:' : 'ws:';
    setConnState(reconnectAttempts ? 'reconnecting' : 'connecting',
      reconnectAttempts
        ? 'Reconnecting... (' + reconnectAttempts + '/' + MAX_RECONNECT_ATTEMPTS + ')'
        : 'Connecting...');
    ws = new WebSocket(proto + '//' + location.host + '/ws');

    ws.onopen = () => {
      reconnectAttempts = 0;
      setConnState('connected', 'Connected');
      startHeartbeat();
      send({ type: 'requestStatus' });
    };
    ws.onmessage = evt => {
      let msg;
      try { msg = JSON.parse(evt.data); } catch (_) { return; }
      handleMessage(msg);
    };
    ws.onclose = () => {
      stopHeartbeat();
      setConnState('disconnected', 'Disconnected');
      scheduleReconnect();
    };
    ws.onerror = () => { setConnState('error', 'Connection error'); };
  }

  function scheduleReconnect() {
    if (reconnectTimer) return;
    if (reconnectAttempts >= MAX_RECONNECT_ATTEMPTS) {
      setConnState('error', 'Connection failed');
      return;
    }
    reconnectAttempts += 1;
    const delay = Math.min(1000 * Math.pow(2, reconnectAttempts - 1), 30000);
    setConnState('reconnecting',
      'Reconnecting... (' + reconnectAttempts + '/' + MAX_RECONNECT_ATTEMPTS + ')');
    reconnectTimer = setTimeout(() => { reconnectTimer = null; connect(); }, delay);
  }

  function startHeartbeat() {
    stopHeartbeat();
    heartbeatTimer = setInterval(() => send({ type: 'ping' }), HEARTBEAT_MS);
  }
  function stopHeartbeat() {
    if (heartbeatTimer) { clearInterval(heartbeatTimer); heartbeatTimer = null; }
  }

  function send(msg) {
    if (ws && ws.readyState === WebSocket.OPEN) ws.send(JSON.stringify(msg));
  }

  // -- messages --------------------------------------------------------

  function handleMessage(msg) {
    switch (msg.type) {
      case 'dump':
        dumps.push(msg.data);
        if (dumps.length > MAX_DUMPS) dumps.splice(0, dumps.length - MAX_DUMPS);
        render();
        break;
      case 'dumps':
        dumps = msg.data || [];
        render();
        break;
      case 'clear':
        dumps = [];
        render();
        break;
      case 'status':
        if (msg.data && 'dumpServerRunning' in msg.data) updateStatus(msg.data);
        break;
      case 'error':
        showError((msg.data && msg.data.message) || 'Server error');
        break;
    }
  }

  function updateStatus(s) {
    $('server-info').textContent =
      (s.dumpServerRunning ? 'dump server :' + s.dumpServerPort : 'dump server stopped') +
      ' | ' + s.connectedClients + ' client(s) | ' + s.totalDumps + ' dump(s)';
  }

  // -- rendering -------------------------------------------------------

  function visibleDumps() {
    const needle = searchTerm.toLowerCase();
    return dumps.filter(d => {
      if (activeCategory !== 'all' && d.category !== activeCategory) return false;
      if (!needle) return true;
      const src = d.source || {};
      return [d.content, src.file, src.function, src['class']]
        .some(v => v && String(v).toLowerCase().includes(needle));
    }).sort((a, b) => (a.timestamp < b.timestamp ? 1 : -1));
  }

  function renderTabs() {
    const counts = { all: dumps.length };
    dumps.forEach(d => { counts[d.category] = (counts[d.category] || 0) + 1; });
    const tabs = $('tabs');
    tabs.innerHTML = '';
    CATEGORIES.forEach(([key, label]) => {
      const btn = document.createElement('button');
      btn.className = 'tab' + (key === activeCategory ? ' active' : '');
      btn.innerHTML = label + '<span class="count">' + (counts[key] || 0) + '</span>';
      btn.onclick = () => { activeCategory = key; render(); };
      tabs.appendChild(btn);
    });
  }

  // Dump markup carries inline <script> calls that innerHTML will not run.
  function runScripts(el) {
    el.querySelectorAll('script').forEach(old => {
      const s = document.createElement('script');
      s.textContent = old.textContent;
      old.replaceWith(s);
    });
  }

  function render() {
    renderTabs();
    const list = $('dumps');
    const items = visibleDumps();
    if (!items.length) {
      list.innerHTML = '<div class="empty">' +
        (dumps.length ? 'No dumps match the current filter' : 'Waiting for dumps...') + '</div>';
      return;
    }
    list.innerHTML = '';
    items.forEach(d => {
      const src = d.source || {};
      const card = document.createElement('div');
      card.className = 'dump';
      const head = document.createElement('div');
      head.className = 'dump-head';
      const where = document.createElement('span');
      where.className = 'src';
      where.textContent = src.file + (src.line ? ':' + src.line : '');
      const cat = document.createElement('span');
      cat.className = 'cat';
      cat.textContent = d.category;
      const time = document.createElement('span');
      time.className = 'time';
      time.textContent = new Date(d.timestamp).toLocaleTimeString();
      head.append(where, cat, time);
      const body = document.createElement('div');
      body.className = 'dump-body';
      body.innerHTML = d.content;
      card.append(head, body);
      list.appendChild(card);
      runScripts(body);
    });
  }

  // -- actions ---------------------------------------------------------

  $('search').addEventListener('input', e => { searchTerm = e.target.value; render(); });
  $('clear-btn').onclick = () => send({ type: 'clearDumps' });
  $('export-btn').onclick = () => {
    const q = activeCategory !== 'all' ? '?category=' + encodeURIComponent(activeCategory) : '';
    window.location.href = '/api/export' + q;
  };
  $('retry-btn').onclick = () => {
    reconnectAttempts = 0;
    if (reconnectTimer) { clearTimeout(reconnectTimer); reconnectTimer = null; }
    connect();
  };

  renderTabs();
  connect();
})();
</script>
</body>
</html>
"""
