"""Inline page templates, rendered with ``render_template_string``."""

_STYLE = """
<style>
  body { font-family: system-ui, -apple-system, Segoe UI, Roboto, sans-serif; background:#0b1020; color:#e8ecf1; display:flex; align-items:center; justify-content:center; min-height:100vh; margin:0; }
  .card { background:#151b2f; border:1px solid #26314f; border-radius:14px; padding:28px 32px; width: 460px; box-shadow: 0 10px 30px rgba(0,0,0,.35); }
  h2 { margin:0 0 12px; }
  label { display:block; margin:10px 0; }
  input { width:100%; padding:10px 12px; border-radius:10px; border:1px solid #3d4f77; background:#0f1426; color:#e8ecf1; box-sizing:border-box; }
  ul { list-style:none; padding:0; }
  li { padding:8px 0; border-bottom:1px solid #26314f; }
  .row { display:flex; gap:12px; }
  .btn { padding:10px 14px; background:#2d6cdf; color:#fff; border:none; border-radius:10px; font-weight:600; text-decoration:none; }
  .btn.secondary { background:#32405f; color:#dbe7ff; border:1px solid #3d4f77; }
  .muted { color:#a7b1c2; font-size:.95rem; }
  .error { color:#ff8a8a; }
  code { color:#ffd479; }
</style>
"""

LOGIN_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Sign in</title>
""" + _STYLE + """
<div class="card">
  <h2>Sign in</h2>
  {% if error %}<p class="error">{{ error }}</p>{% endif %}
  <form method="post" action="{{ url_for('oauth.login', next=next) }}">
    <label>Username
      <input name="username" autocomplete="username" required>
    </label>
    <label>Password
      <input name="password" type="password" autocomplete="current-password" required>
    </label>
    <button class="btn" type="submit">Continue</button>
  </form>
</div>
"""

CONSENT_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Authorize {{ client.client_name }}</title>
""" + _STYLE + """
<div class="card">
  <h2>Authorize {{ client.client_name }}</h2>
  <p class="muted">Signed in as <b>{{ username }}</b>. This app is requesting access to:</p>
  <ul>
    {% for s in scopes %}
      <li><b>{{ s }}</b> {{ scope_desc.get(s, 'Requested permission') }}</li>
    {% endfor %}
  </ul>
  <div class="row">
    <form method="post" action="{{ url_for('oauth.authorize') }}">
      <input type="hidden" name="request_id" value="{{ request_id }}">
      <input type="hidden" name="csrf_token" value="{{ csrf_token }}">
      <input type="hidden" name="confirm" value="yes">
      <button class="btn" type="submit">Allow</button>
    </form>
    <form method="post" action="{{ url_for('oauth.authorize') }}">
      <input type="hidden" name="request_id" value="{{ request_id }}">
      <input type="hidden" name="csrf_token" value="{{ csrf_token }}">
      <input type="hidden" name="confirm" value="no">
      <button class="btn secondary" type="submit">Deny</button>
    </form>
  </div>
</div>
"""

# never renders anything taken from the request
ERROR_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Authorization error</title>
""" + _STYLE + """
<div class="card">
  <h2>Authorization failed</h2>
  <p>Error: <code>{{ error.error }}</code></p>
  {% if error.description %}<p class="muted">{{ error.description }}</p>{% endif %}
  <p class="muted">Return to the application you came from and try again.</p>
</div>
"""

SIGNOUT_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Signed out</title>
""" + _STYLE + """
<div class="card">
  <h2>You're signed out</h2>
  <p class="muted">You can close this tab now.</p>
  <a class="btn" href="{{ url_for('oauth.index') }}">Return to server home</a>
</div>
"""

HOME_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Authorization Server</title>
""" + _STYLE + """
<div class="card">
  <h2>Authorization Server</h2>
  <p class="muted">OAuth 2.1 authorization code flow with PKCE, refresh token rotation and OpenID Connect.</p>
  <p>Logged in: <b>{{ user.username if user else 'none' }}</b></p>
  <div class="row">
    {% if user %}
      <a class="btn" href="{{ url_for('oauth.logout') }}">Log out</a>
    {% else %}
      <a class="btn" href="{{ url_for('oauth.login') }}">Log in</a>
    {% endif %}
  </div>
</div>
"""
