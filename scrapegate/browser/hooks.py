"""
Page-side instrumentation installed on every session before navigation.

The Turnstile hook traps assignment of ``window.turnstile`` so ``render`` is
replaced the moment the API object appears, before any page script can call
it. The captured parameters, together with the page's callback, are posted
as one message through the ``CHALLENGE_BINDING`` function exposed by the
session.
"""

CHALLENGE_BINDING = "__scrapegateChallenge"

TURNSTILE_HOOK = """
(() => {
  const render = (container, params) => {
    const post = window["%(binding)s"];
    if (typeof post === "function") {
      post({
        kind: "turnstile",
        sitekey: params.sitekey,
        pageurl: window.location.href,
        action: params.action || null,
        data: params.cData || null,
        pagedata: params.chlPageData || null,
        userAgent: navigator.userAgent,
        callback: params.callback,
      });
    }
    return "scrapegate";
  };

  const intercept = (api) => {
    if (!api || typeof api !== "object") {
      return api;
    }
    try {
      // later assignments by the API script itself are ignored
      Object.defineProperty(api, "render", {
        configurable: true,
        get: () => render,
        set: () => {},
      });
    } catch (e) {
      api.render = render;
    }
    return api;
  };

  let current = intercept(window.turnstile);
  Object.defineProperty(window, "turnstile", {
    configurable: true,
    get: () => current,
    set: (value) => {
      current = intercept(value);
    },
  });
})();
""" % {"binding": CHALLENGE_BINDING}

# Strips the callback so the rest of the message can cross as JSON
READ_MESSAGE = "message => { const { callback, ...rest } = message; return rest; }"

DELIVER_TOKEN = "(message, token) => { if (typeof message.callback === 'function') { message.callback(token); } }"

SCROLL_HEIGHT = "() => document.body ? document.body.scrollHeight : 0"

NUDGE_UP = """
offset => {
  const y = Math.max(document.body.scrollHeight - document.documentElement.clientHeight - offset, 0);
  window.scrollTo(0, y);
  return { y, scrollHeight: document.body.scrollHeight, clientHeight: document.documentElement.clientHeight };
}
"""

SCROLL_TO_BOTTOM = "() => window.scrollTo(0, document.body.scrollHeight)"

HEIGHT_GREW = "previous => document.body && document.body.scrollHeight > previous"
