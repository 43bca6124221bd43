"""Static documentation page served for GET requests."""

from __future__ import annotations

import html

_ROUTE_PLACEHOLDER = "__RELAY_ROUTE__"

_DOCS_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>OpenAI SDK Streaming API</title>
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 800px; margin: 0 auto; padding: 20px; }
    h1 { color: #2563eb; }
    code { background: #f4f4f4; padding: 2px 5px; border-radius: 3px; font-family: monospace; }
    pre { background: #f4f4f4; padding: 15px; border-radius: 5px; overflow-x: auto; }
    .example { margin: 20px 0; }
    .endpoint { font-weight: bold; color: #2563eb; }
  </style>
</head>
<body>
  <h1>OpenAI SDK Streaming API</h1>
  <p>This gateway relays streaming turns from the OpenAI Responses API as Server-Sent Events.</p>

  <h2>Endpoints</h2>
  <div class="endpoint">__RELAY_ROUTE__</div>
  <p>Accepts POST requests with <code>messages</code> and optional <code>tools</code>, returning a streaming SSE response.
  Each frame is <code>data: {"event": "&lt;type&gt;", "data": { ...original event... }}</code>; the stream ends when the connection closes.</p>

  <h2>Example Usage</h2>
  <div class="example">
    <pre><code>// Example fetch request
const response = await fetch('__RELAY_ROUTE__', {
  method: 'POST',
  headers: {
    'Content-Type': 'application/json'
  },
  body: JSON.stringify({
    messages: [
      { role: 'system', content: 'You are a helpful assistant.' },
      { role: 'user', content: 'Hello, how are you?' }
    ]
  })
});

// Process the SSE stream
const reader = response.body.getReader();
const decoder = new TextDecoder();

while (true) {
  const { done, value } = await reader.read();
  if (done) break;
  console.log(decoder.decode(value));
}</code></pre>
  </div>
</body>
</html>
"""


def render_docs_page(route_path: str) -> str:
    return _DOCS_TEMPLATE.replace(_ROUTE_PLACEHOLDER, html.escape(route_path))
