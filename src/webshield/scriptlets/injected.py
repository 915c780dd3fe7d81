"""
Scriptlets that run entirely inside the page.

Each entry is the source of a JS function taking the scriptlet's string
arguments. The runtime wraps it with ``build_injection`` and evaluates it in
the main world.
"""

# Walks "a.b.c" from window, creating missing links; returns [owner, "c"]
_RESOLVE_CHAIN = """
    const resolveChain = (chain) => {
        const parts = chain.split('.');
        const last = parts.pop();
        let owner = window;
        for (const part of parts) {
            if (owner[part] === undefined || owner[part] === null) {
                owner[part] = {};
            }
            owner = owner[part];
        }
        return [owner, last];
    };
"""

# Shared matcher for the needle-based defusers
_MATCHES = """
    const matches = (value, needle) => {
        if (!needle) return true;
        const text = typeof value === 'function' ? value.toString() : String(value);
        if (needle.length > 2 && needle.startsWith('/') && needle.endsWith('/')) {
            return new RegExp(needle.slice(1, -1)).test(text);
        }
        return text.includes(needle);
    };
"""

ABORT_ON_PROPERTY_READ = (
    "function (property) {\n"
    "    if (!property) return;\n"
    + _RESOLVE_CHAIN
    + """
    const [owner, key] = resolveChain(property);
    Object.defineProperty(owner, key, {
        configurable: true,
        get() { throw new ReferenceError('WebShield: ' + property); },
        set() {},
    });
}"""
)

ABORT_ON_PROPERTY_WRITE = (
    "function (property) {\n"
    "    if (!property) return;\n"
    + _RESOLVE_CHAIN
    + """
    const [owner, key] = resolveChain(property);
    Object.defineProperty(owner, key, {
        configurable: true,
        get() { return undefined; },
        set() { throw new ReferenceError('WebShield: ' + property); },
    });
}"""
)

SET_CONSTANT = (
    "function (property, value) {\n"
    "    if (!property) return;\n"
    + _RESOLVE_CHAIN
    + """
    const constants = {
        'undefined': undefined,
        'null': null,
        'true': true,
        'false': false,
        'noopFunc': () => {},
        'trueFunc': () => true,
        'falseFunc': () => false,
        'emptyArr': [],
        'emptyObj': {},
        '': '',
    };
    let constant;
    if (Object.prototype.hasOwnProperty.call(constants, value)) {
        constant = constants[value];
    } else if (/^-?\\d+$/.test(value)) {
        constant = parseInt(value, 10);
    } else {
        constant = value;
    }
    const [owner, key] = resolveChain(property);
    try {
        Object.defineProperty(owner, key, {
            configurable: true,
            get() { return constant; },
            set() {},
        });
    } catch (e) {
        owner[key] = constant;
    }
}"""
)

REMOVE_CLASS = """function (classNames, selector) {
    if (!classNames) return;
    const names = classNames.split('|').map((name) => name.trim()).filter(Boolean);
    const target = selector || names.map((name) => '.' + name).join(',');
    const strip = () => {
        document.querySelectorAll(target).forEach((el) => el.classList.remove(...names));
    };
    strip();
    new MutationObserver(strip).observe(document.documentElement, {
        childList: true,
        subtree: true,
        attributes: true,
        attributeFilter: ['class'],
    });
}"""


def _timer_defuser(timer: str) -> str:
    return (
        "function (needle, delay) {\n"
        + _MATCHES
        + f"""
    const native = window.{timer};
    window.{timer} = function (callback, ms, ...rest) {{
        const delayMatches = delay === undefined || delay === '' || Number(ms) === parseInt(delay, 10);
        if (matches(callback, needle) && delayMatches) {{
            return 0;
        }}
        return native.call(this, callback, ms, ...rest);
    }};
}}"""
    )


NO_SET_TIMEOUT_IF = _timer_defuser("setTimeout")
NO_SET_INTERVAL_IF = _timer_defuser("setInterval")

NO_FETCH_IF = (
    "function (needle) {\n"
    + _MATCHES
    + """
    const nativeFetch = window.fetch;
    window.fetch = function (resource, init) {
        const url = resource instanceof Request ? resource.url : String(resource);
        if (needle && matches(url, needle)) {
            return Promise.reject(new TypeError('WebShield: blocked fetch'));
        }
        return nativeFetch.apply(this, arguments);
    };
}"""
)

ADD_EVENT_LISTENER_DEFUSER = (
    "function (type, needle) {\n"
    + _MATCHES
    + """
    const nativeAdd = EventTarget.prototype.addEventListener;
    EventTarget.prototype.addEventListener = function (eventType, listener, options) {
        if (type && eventType === type && matches(listener, needle)) {
            return undefined;
        }
        return nativeAdd.call(this, eventType, listener, options);
    };
}"""
)

JSON_PRUNE = """function (paths) {
    if (!paths) return;
    const chains = paths.split(/\\s+/).filter(Boolean).map((path) => path.split('.'));
    const nativeParse = JSON.parse;
    JSON.parse = function (text, reviver) {
        const result = nativeParse.call(this, text, reviver);
        if (result && typeof result === 'object') {
            for (const chain of chains) {
                let node = result;
                for (const link of chain.slice(0, -1)) {
                    node = node ? node[link] : undefined;
                }
                if (node && typeof node === 'object') {
                    delete node[chain[chain.length - 1]];
                }
            }
        }
        return result;
    };
}"""

NOWEBRTC = """function () {
    if (!window.RTCPeerConnection && !window.webkitRTCPeerConnection) return;
    const blocked = function () {
        throw new Error('WebShield: WebRTC disabled');
    };
    window.RTCPeerConnection = blocked;
    window.webkitRTCPeerConnection = blocked;
}"""

# name -> (source, aliases)
INJECTED_SCRIPTLETS: dict[str, tuple[str, tuple[str, ...]]] = {
    "abort-on-property-read": (
        ABORT_ON_PROPERTY_READ,
        ("aopr", "abort-on-property-read.js", "ubo-abort-on-property-read.js"),
    ),
    "abort-on-property-write": (
        ABORT_ON_PROPERTY_WRITE,
        ("aopw", "abort-on-property-write.js", "ubo-abort-on-property-write.js"),
    ),
    "set-constant": (SET_CONSTANT, ("set", "set-constant.js", "ubo-set-constant.js")),
    "remove-class": (REMOVE_CLASS, ("rc", "remove-class.js", "ubo-remove-class.js")),
    "no-setTimeout-if": (NO_SET_TIMEOUT_IF, ("nostif", "no-setTimeout-if.js")),
    "no-setInterval-if": (NO_SET_INTERVAL_IF, ("nosiif", "no-setInterval-if.js")),
    "no-fetch-if": (NO_FETCH_IF, ("no-fetch-if.js",)),
    "addEventListener-defuser": (ADD_EVENT_LISTENER_DEFUSER, ("aeld", "addEventListener-defuser.js")),
    "json-prune": (JSON_PRUNE, ("json-prune.js", "ubo-json-prune.js")),
    "nowebrtc": (NOWEBRTC, ("nowebrtc.js",)),
}
