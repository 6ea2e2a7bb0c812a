"""Browser page served at ``/`` (the address encoded in the pairing QR code).

The page edits the repository list and drives the JSON endpoints:
``/repositories`` to load, ``/validate`` per URL, ``/propose`` to submit
and ``/status/{changeId}`` to follow the decision made on this device.
All dynamic text is inserted with ``textContent``.
"""

from __future__ import annotations

STATUS_POLL_MS = 2000

PAIRING_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Scrapearr repositories</title>
<style>
  body { font-family: system-ui, sans-serif; max-width: 40rem; margin: 2rem auto;
         padding: 0 1rem; background: #111; color: #eee; }
  header { display: flex; align-items: center; gap: 1rem; }
  header img { height: 48px; }
  ul { list-style: none; padding: 0; }
  li { display: flex; gap: .5rem; align-items: center; margin: .4rem 0; }
  li input { flex: 1; padding: .4rem; }
  .ok { color: #6c6; } .bad { color: #e66; } .muted { color: #999; }
  button { padding: .4rem .8rem; }
  #status { margin-top: 1rem; min-height: 1.5rem; }
</style>
</head>
<body>
<header>
  <img id="logo" src="/logo" alt="" onerror="this.remove()">
  <h1>Repositories</h1>
</header>
<p class="muted">Edit the list and send it. Changes apply after they are
confirmed on the device.</p>
<ul id="repos"></ul>
<p>
  <input id="new-url" type="url" placeholder="https://example.com/manifest.json"
         size="40">
  <button id="add">Add</button>
</p>
<p><button id="send">Send to device</button></p>
<div id="status"></div>
<script>
const POLL_MS = __POLL_MS__;
const list = document.getElementById("repos");
const statusBox = document.getElementById("status");

function setStatus(text, cls) {
  statusBox.textContent = text;
  statusBox.className = cls || "";
}

function addRow(url, name) {
  const li = document.createElement("li");
  const input = document.createElement("input");
  input.value = url;
  const label = document.createElement("span");
  label.className = "muted";
  label.textContent = name || "";
  const check = document.createElement("button");
  check.textContent = "Check";
  check.onclick = () => validate(input.value, label);
  const remove = document.createElement("button");
  remove.textContent = "Remove";
  remove.onclick = () => li.remove();
  li.append(input, label, check, remove);
  list.append(li);
}

async function validate(url, label) {
  label.className = "muted";
  label.textContent = "checking...";
  const resp = await fetch("/validate", {
    method: "POST",
    headers: {"Content-Type": "application/json"},
    body: JSON.stringify({url: url}),
  });
  const body = await resp.json();
  if (resp.ok) {
    label.className = "ok";
    label.textContent = body.name;
  } else {
    label.className = "bad";
    label.textContent = "not a repository";
  }
}

function currentUrls() {
  return Array.from(list.querySelectorAll("input"))
    .map((input) => input.value.trim())
    .filter((url) => url.length > 0);
}

async function load() {
  const resp = await fetch("/repositories");
  const body = await resp.json();
  list.replaceChildren();
  body.repositories.forEach((repo) => addRow(repo.url, repo.name));
}

async function poll(changeId) {
  const resp = await fetch("/status/" + encodeURIComponent(changeId));
  if (!resp.ok) {
    setStatus("The request is no longer known to the device.", "bad");
    return;
  }
  const body = await resp.json();
  if (body.state === "Proposed") {
    setStatus("Waiting for confirmation on the device...", "muted");
    setTimeout(() => poll(changeId), POLL_MS);
  } else if (body.state === "Confirmed") {
    setStatus("Confirmed. The device is updating its repositories.", "ok");
    load();
  } else if (body.state === "Rejected") {
    setStatus("Rejected on the device.", "bad");
  } else {
    setStatus("The request expired. Send it again.", "bad");
  }
}

async function send() {
  setStatus("Checking repositories...", "muted");
  const resp = await fetch("/propose", {
    method: "POST",
    headers: {"Content-Type": "application/json"},
    body: JSON.stringify({urls: currentUrls()}),
  });
  const body = await resp.json();
  if (!resp.ok) {
    const invalid = body.invalid_urls || [];
    setStatus("Not valid repositories: " + invalid.join(", "), "bad");
    return;
  }
  poll(body.changeId);
}

document.getElementById("add").onclick = () => {
  const input = document.getElementById("new-url");
  if (input.value.trim()) {
    addRow(input.value.trim(), "");
    input.value = "";
  }
};
document.getElementById("send").onclick = send;
load();
</script>
</body>
</html>
""".replace("__POLL_MS__", str(STATUS_POLL_MS))
