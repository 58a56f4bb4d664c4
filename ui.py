import html
import json

from entries import latest_entry

RECENT_ENTRY_LIMIT = 20


def _knee_color(s):
    if s <= 2: return "#22c55e"   # green
    if s <= 5: return "#eab308"   # yellow
    if s <= 7: return "#f97316"   # orange
    return "#ef4444"              # red


def _int_or_zero(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _fmt(value, unit: str = "") -> str:
    if value is None or value == "":
        return "-"
    return html.escape(f"{value}{unit}")


def _alert(message: str) -> str:
    return f'<div class="alert">{html.escape(message)}</div>' if message else ""


def _notice(message: str) -> str:
    if not message:
        return ""
    return (
        '<div style="background:#dcfce7; border:1px solid #86efac; color:#15803d; border-radius:6px;'
        f' padding:10px 14px; margin-bottom:16px; font-size:14px;">{html.escape(message)}</div>'
    )


def _confirm_attr(message: str) -> str:
    """onsubmit handler that only lets the form through after a yes from the user."""
    return html.escape(f"return confirmSubmit(this, {json.dumps(message)})", quote=True)


def _nav_bar(email: str = "") -> str:
    who = html.escape(email or "(no email)")
    return (
        '<nav style="background:#1e3a8a;">'
        '<div style="padding:0 24px; height:52px; display:flex; align-items:center; gap:20px;">'
        '<a href="/" style="font-weight:800; color:#fff; font-size:15px; text-decoration:none;'
        ' flex-shrink:0; margin-right:auto;">Body Notebook</a>'
        f'<span style="color:rgba(255,255,255,0.8); font-size:13px;">{who}</span>'
        '<form method="post" action="/logout" style="margin:0;">'
        '<button type="submit" style="background:transparent; border:1px solid rgba(255,255,255,0.4);'
        ' color:rgba(255,255,255,0.7); border-radius:6px; padding:4px 12px;'
        ' font-size:13px; cursor:pointer; font-family:inherit;">Log Out</button>'
        '</form>'
        '</div>'
        '</nav>'
    )


def _latest_summary(entries: list) -> str:
    latest = latest_entry(entries) or {}
    knee = latest.get("knee_pain")
    return f"""<div class="card summary">
      <div><div class="card-ts">Latest</div><div class="card-name">{_fmt(latest.get("date"))}</div></div>
      <div><div class="card-ts">Weight</div><div class="card-name">{_fmt(latest.get("weight"))}</div></div>
      <div><div class="card-ts">Knee pain (0-10)</div><div class="card-name">{_fmt(knee)}</div></div>
    </div>"""


def _entry_form(state) -> str:
    form = state.form
    editing = state.editing
    esc = lambda v: html.escape(v or "", quote=True)
    knee = min(max(_int_or_zero(form.knee_pain), 0), 10)
    busy = state.is_busy("entries")
    label = "Saving..." if busy else ("Save changes" if editing else "Save")
    hidden = ""
    cancel = ""
    if editing:
        hidden = (
            f'<input type="hidden" name="editing_id" value="{esc(editing.record_id)}">'
            f'<input type="hidden" name="original_date" value="{esc(editing.original_date)}">'
        )
        cancel = (
            '<form method="post" action="/entries/cancel" style="margin:0;">'
            '<button type="submit" class="btn-delete">Cancel</button></form>'
        )

    def number_input(name, label_text, value):
        return (
            f'<div class="form-group"><label for="{name}">{label_text}</label>'
            f'<input type="text" inputmode="decimal" id="{name}" name="{name}" value="{esc(value)}"></div>'
        )

    return f"""<div class="card">
      <h2 style="margin-top:0;">{"Edit entry" if editing else "Log today"}</h2>
      <form method="post" action="/entries" id="entry-form">
        {hidden}
        <div class="grid-4">
          <div class="form-group"><label for="date">Date</label>
            <input type="date" id="date" name="date" value="{esc(form.date)}" required></div>
          {number_input("weight", "Weight", form.weight)}
          {number_input("bp_s", "BP (systolic)", form.bp_s)}
          {number_input("bp_d", "BP (diastolic)", form.bp_d)}
          {number_input("exercise_min", "Exercise (min)", form.exercise_min)}
          {number_input("plank_min", "Plank (min)", form.plank_min)}
        </div>
        <div class="form-group">
          <label for="knee_pain">Knee pain (0-10)</label>
          <div class="slider-row">
            <input type="range" id="knee_pain" name="knee_pain" min="0" max="10" value="{knee}"
                   oninput="updateKnee(this.value)">
            <div class="sev-badge" id="knee-badge" style="background:{_knee_color(knee)}">{knee}</div>
          </div>
        </div>
        <div class="form-group">
          <label for="notes">Notes <span style="color:#aaa;font-weight:400">(optional)</span></label>
          <input type="text" id="notes" name="notes" value="{esc(form.notes)}"
                 placeholder="e.g. first steps in the morning hurt, fine after table tennis">
        </div>
      </form>
      <div style="display:flex; gap:10px; align-items:center;">
        <button type="submit" form="entry-form" class="btn-primary"{" disabled" if busy else ""}>{label}</button>
        {cancel}
      </div>
      <p class="card-ts" style="margin-top:10px;">Saving a date that already has an entry overwrites it.</p>
    </div>"""


def _entry_cards(entries: list) -> str:
    if not entries:
        return '<p class="empty">No entries yet. Save one above.</p>'
    cards = []
    for e in entries[:RECENT_ENTRY_LIMIT]:
        rid = html.escape(str(e.get("id", "")), quote=True)
        date = e.get("date") or ""
        knee = _int_or_zero(e.get("knee_pain"))
        notes = html.escape(e.get("notes") or "No notes")
        cards.append(f"""<div class="card">
      <div class="card-header">
        <div class="badge" style="background:{_knee_color(knee)}">{knee}</div>
        <div style="flex:1;">
          <div class="card-name">{html.escape(date)}</div>
          <div class="card-ts">Weight {_fmt(e.get("weight"))} &middot; BP {_fmt(e.get("bp_s"))}/{_fmt(e.get("bp_d"))}
            &middot; Exercise {_fmt(e.get("exercise_min"), " min")} &middot; Plank {_fmt(e.get("plank_min"), " min")}</div>
        </div>
        <a class="btn-edit" href="/entries/{rid}/edit">Edit</a>
        <form method="post" action="/entries/{rid}/delete" style="margin:0;"
              onsubmit="{_confirm_attr(f"Delete the entry for {date}?")}">
          <input type="hidden" name="confirmed" value="">
          <button type="submit" class="btn-delete">Delete</button>
        </form>
      </div>
      <p class="card-notes">{notes}</p>
    </div>""")
    return "".join(cards)


def _med_section(state) -> str:
    doc = state.med_doc or {}
    paths = doc.get("file_paths") or []
    busy = state.is_busy("med")
    if busy:
        status = "Working..."
    elif state.med_status:
        status = state.med_status
    else:
        status = "Ready" if state.med_doc else "Preparing your photo document..."
    thumbs = []
    for p in paths:
        url = state.med_urls.get(p)
        img = (
            f'<img src="{html.escape(url, quote=True)}" alt="" style="width:100%; border-radius:8px; display:block;">'
            if url else '<div class="card-ts" style="height:80px;">Loading image...</div>'
        )
        thumbs.append(f"""<div class="thumb">{img}
        <form method="post" action="/med-docs/delete" style="margin:6px 0 0;"
              onsubmit="{_confirm_attr("Delete this photo?")}">
          <input type="hidden" name="path" value="{html.escape(p, quote=True)}">
          <input type="hidden" name="confirmed" value="">
          <button type="submit" class="btn-delete" style="width:100%;"{" disabled" if busy else ""}>Delete</button>
        </form></div>""")
    thumbs_html = "".join(thumbs) or '<p class="empty">No photos yet.</p>'
    return f"""<div class="card">
      <h2 style="margin-top:0;">Prescriptions &amp; supplements</h2>
      <p class="card-ts">Keep photos of what you currently take. Several photos are fine.</p>
      <form method="post" action="/med-docs/upload" enctype="multipart/form-data">
        <div class="form-group">
          <input type="text" name="title" value="{html.escape(state.med_title, quote=True)}"
                 placeholder="e.g. current prescriptions and supplements">
        </div>
        <div class="form-group">
          <input type="file" name="files" accept="image/*" multiple capture="environment"{" disabled" if busy else ""}>
        </div>
        <button type="submit" class="btn-primary med-submit"{" disabled" if busy else ""}>Add photos</button>
      </form>
      <p class="card-ts" style="margin-top:10px;">{html.escape(status)}</p>
      <div class="thumbs">{thumbs_html}</div>
    </div>"""


PAGE_STYLE = """
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <script>
    (function () {
      function clientDateLocal() {
        var n = new Date();
        var l = new Date(n.getTime() - n.getTimezoneOffset() * 60000);
        return l.toISOString().slice(0, 10);
      }
      function setCookie(name, value) {
        document.cookie = name + "=" + encodeURIComponent(value) + "; path=/; max-age=31536000; SameSite=Lax";
      }
      window._applyClientDateDefaults = function (root) {
        var dayStr = clientDateLocal();
        (root || document).querySelectorAll('input[type="date"]').forEach(function (el) {
          if (!el.value) el.value = dayStr;
        });
      };
      window.confirmSubmit = function (form, message) {
        if (!window.confirm(message)) return false;
        form.querySelector('input[name="confirmed"]').value = "yes";
        return true;
      };
      window.updateKnee = function (v) {
        var colors = {0:"#22c55e",1:"#22c55e",2:"#22c55e",3:"#eab308",4:"#eab308",5:"#eab308",
                      6:"#f97316",7:"#f97316",8:"#ef4444",9:"#ef4444",10:"#ef4444"};
        var badge = document.getElementById("knee-badge");
        if (!badge) return;
        badge.textContent = v;
        badge.style.background = colors[+v];
      };
      setCookie("tz_offset", String(new Date().getTimezoneOffset()));
      if (document.readyState === "loading") {
        document.addEventListener("DOMContentLoaded", function () {
          window._applyClientDateDefaults(document);
        });
      } else {
        window._applyClientDateDefaults(document);
      }
    })();
  </script>
  <style>
    body { font-family: system-ui, sans-serif; background: #f5f5f5; margin: 0; padding: 0; color: #222; }
    .container { max-width: 860px; margin: 0 auto; padding: 24px; }
    h1 { margin-bottom: 4px; }
    h2 { font-size: 18px; }
    .card { background: #fff; border: 1px solid #e0e0e0; border-radius: 8px; padding: 16px; margin: 12px 0; }
    .card-header { display: flex; align-items: center; gap: 10px; }
    .summary { display: grid; grid-template-columns: 1fr 1fr 1fr; gap: 12px; }
    .grid-4 { display: grid; grid-template-columns: repeat(auto-fill, minmax(150px, 1fr)); gap: 0 12px; }
    .thumbs { display: grid; grid-template-columns: repeat(auto-fill, minmax(120px, 1fr)); gap: 10px; margin-top: 12px; }
    .thumb { border: 1px solid #e0e0e0; border-radius: 8px; padding: 8px; }
    .badge { display: inline-block; width: 36px; height: 36px; border-radius: 50%;
             color: #fff; font-weight: 700; font-size: 15px;
             display: flex; align-items: center; justify-content: center; flex-shrink: 0; }
    .card-name { font-size: 17px; font-weight: 600; }
    .card-ts { font-size: 12px; color: #888; margin-top: 2px; }
    .card-notes { margin: 10px 0 0; font-size: 14px; color: #444; }
    .btn-delete { background: none; border: 1px solid #e0e0e0;
                  border-radius: 6px; padding: 4px 10px; font-size: 13px; color: #888;
                  cursor: pointer; }
    .btn-delete:hover { background: #fee2e2; border-color: #ef4444; color: #ef4444; }
    .btn-edit { font-size: 13px; color: #3b82f6; border: 1px solid #d1d5db;
                border-radius: 6px; padding: 4px 10px; text-decoration: none; display: inline-block; }
    .btn-edit:hover { background: #eff6ff; border-color: #3b82f6; }
    .btn-primary { background: #3b82f6; color: #fff; border: none; border-radius: 8px;
                   padding: 10px 22px; font-size: 15px; cursor: pointer; font-weight: 600; }
    .btn-primary:hover { background: #2563eb; }
    .btn-primary[disabled] { opacity: 0.6; cursor: default; }
    .btn-primary.med-submit { background: #7c3aed; }
    .btn-primary.med-submit:hover { background: #6d28d9; }
    .form-group { margin-bottom: 16px; }
    label { display: block; font-weight: 600; font-size: 14px; margin-bottom: 6px; }
    input[type=text], input[type=password], input[type=email], input[type=date] { width: 100%; box-sizing: border-box; border: 1px solid #d1d5db;
      border-radius: 6px; padding: 8px 10px; font-size: 15px; font-family: inherit; }
    input[type=text]:focus, input[type=password]:focus, input[type=email]:focus, input[type=date]:focus { outline: 2px solid #3b82f6; border-color: transparent; }
    .slider-row { display: flex; align-items: center; gap: 14px; }
    input[type=range] { flex: 1; accent-color: #3b82f6; height: 6px; cursor: pointer; }
    .sev-badge { width: 42px; height: 42px; border-radius: 50%; color: #fff; font-weight: 700;
                 font-size: 18px; display: flex; align-items: center; justify-content: center;
                 flex-shrink: 0; transition: background 0.2s; }
    .alert { background: #fee2e2; border: 1px solid #fca5a5; color: #b91c1c;
             border-radius: 6px; padding: 10px 14px; margin-bottom: 16px; font-size: 14px; }
    .empty { color: #888; font-style: italic; margin-top: 16px; }
    @media (max-width: 640px) {
      .container { padding: 16px; }
      .summary { grid-template-columns: 1fr; }
    }
  </style>
"""
