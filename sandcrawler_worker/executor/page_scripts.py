"""JavaScript snippets evaluated inside scraped pages."""

from __future__ import annotations

# Name of the function pages use to talk back to the worker. artoo.js looks
# for it when running under a headless worker.
SIGNAL_BINDING = "callPhantom"

# Polls document.readyState every 30ms and signals once it is complete
READY_POLL_SCRIPT = """
() => {
  var interval = setInterval(function() {
    if (document.readyState === 'complete') {
      clearInterval(interval);
      window.callPhantom({
        head: 'documentReady',
        body: true,
        passphrase: 'detoo'
      });
    }
  }, 30);
}
"""

# Keeps the injected jQuery out of the page's own jQuery/$ globals
JQUERY_NO_CONFLICT_SCRIPT = """
() => {
  if (window.jQuery)
    window.artooPhantomJQuery = window.jQuery.noConflict();
}
"""

# artoo.js reads its settings from this element when it boots
ARTOO_SETTINGS_SCRIPT = """
(jsonSettings) => {
  var settings = document.createElement('div');
  settings.setAttribute('id', 'artoo_injected_script');
  settings.setAttribute('settings', jsonSettings);

  document.documentElement.appendChild(settings);
}
"""

# Runs the order's script on the next tick without waiting for it; uncaught
# errors surface as page errors
ASYNC_EVALUATE_SCRIPT = """
(source) => {
  setTimeout(function() {
    var fn = (0, eval)('(' + source + ')');
    if (typeof fn === 'function')
      fn();
  }, 0);
}
"""
