"""In-page JavaScript used by the Playwright control channel.

Each script is an arrow function passed to ``page.evaluate``. Elements are
always addressed by the unique selector that ``SELECTOR_FN`` builds, so every
value that crosses the channel is plain JSON.
"""

# Elements that take part in sequential keyboard navigation
FOCUSABLE_SELECTOR = ", ".join([
    "a[href]",
    "button:not([disabled])",
    "input:not([disabled]):not([type=\"hidden\"])",
    "select:not([disabled])",
    "textarea:not([disabled])",
    "[tabindex]:not([tabindex=\"-1\"])",
    "[contenteditable=\"true\"]",
    "details > summary",
    "audio[controls]",
    "video[controls]",
    "iframe",
])

# Elements a user might try to operate, focusable or not
INTERACTIVE_SELECTOR = ", ".join([
    FOCUSABLE_SELECTOR,
    "[role=\"button\"]",
    "[role=\"link\"]",
    "[role=\"checkbox\"]",
    "[role=\"tab\"]",
    "[role=\"menuitem\"]",
    "[onclick]",
])

SELECTOR_FN = """
const __a11ySelector = (el) => {
    if (!(el instanceof Element)) return null;
    if (el.id && document.querySelectorAll('#' + CSS.escape(el.id)).length === 1) {
        return '#' + CSS.escape(el.id);
    }
    const tag = el.tagName.toLowerCase();
    if (el.classList.length) {
        const withClasses = tag + Array.from(el.classList).map(c => '.' + CSS.escape(c)).join('');
        if (document.querySelectorAll(withClasses).length === 1) return withClasses;
    }
    const parent = el.parentElement;
    if (!parent || el === document.documentElement) return tag;
    const sameTag = Array.from(parent.children).filter(c => c.tagName === el.tagName);
    const index = sameTag.indexOf(el) + 1;
    return __a11ySelector(parent) + ' > ' + tag + ':nth-of-type(' + index + ')';
};
"""

QUERY_ALL = """
(selector) => {
    %s
    return Array.from(document.querySelectorAll(selector)).map(__a11ySelector);
}
""" % SELECTOR_FN

DESCRIBE_ELEMENT = """
(selector) => {
    %s
    const el = document.querySelector(selector);
    if (!el) return null;
    const attributes = {};
    for (const attr of el.attributes) attributes[attr.name] = attr.value;
    const ancestors = [];
    for (let p = el.parentElement; p; p = p.parentElement) ancestors.push(p.tagName.toLowerCase());
    const parent = el.parentElement;
    return {
        selector: selector,
        tag: el.tagName.toLowerCase(),
        tab_index: el.tabIndex,
        attributes: attributes,
        text: (el.innerText || el.textContent || '').trim().slice(0, 200),
        parent_selector: parent ? __a11ySelector(parent) : null,
        sibling_count: parent ? parent.children.length - 1 : 0,
        ancestor_tags: ancestors,
        has_label: !!(el.labels && el.labels.length > 0),
    };
}
""" % SELECTOR_FN

COMPUTED_STYLE = """
([selector, properties]) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const style = getComputedStyle(el);
    const result = {};
    for (const prop of properties) result[prop] = style.getPropertyValue(prop);
    return result;
}
"""

BOUNDING_RECT = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const r = el.getBoundingClientRect();
    return {x: r.x, y: r.y, width: r.width, height: r.height};
}
"""

ACTIVE_ELEMENT = """
() => {
    %s
    let el = document.activeElement;
    while (el && el.shadowRoot && el.shadowRoot.activeElement) el = el.shadowRoot.activeElement;
    if (!el || el === document.body || el === document.documentElement) return null;
    return __a11ySelector(el);
}
""" % SELECTOR_FN

FOCUS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    el.focus();
    return document.activeElement === el;
}
"""

# Blurring alone leaves the sequential navigation starting point on the old
# element. Focusing and removing a throwaway element at the top of the body
# moves it back to the start of the document.
RESET_FOCUS = """
() => {
    if (document.activeElement && document.activeElement.blur) document.activeElement.blur();
    const anchor = document.createElement('span');
    anchor.tabIndex = -1;
    anchor.setAttribute('data-a11y-bot', 'focus-reset');
    document.body.insertBefore(anchor, document.body.firstChild);
    anchor.focus();
    anchor.remove();
}
"""

IS_LOADING = """
() => {
    if (document.readyState !== 'complete') return true;
    const busy = document.querySelectorAll('[aria-busy="true"], [role="progressbar"], .loading, .spinner');
    for (const el of busy) {
        const r = el.getBoundingClientRect();
        const s = getComputedStyle(el);
        if (r.width > 0 && r.height > 0 && s.display !== 'none' && s.visibility !== 'hidden') return true;
    }
    return false;
}
"""

INSERT_RULES = """
([ownerId, rules]) => {
    const id = 'a11y-bot-fix-' + ownerId;
    let style = document.getElementById(id);
    if (!style) {
        style = document.createElement('style');
        style.id = id;
        style.setAttribute('data-a11y-bot', ownerId);
        document.head.appendChild(style);
    }
    for (const rule of rules) style.sheet.insertRule(rule, style.sheet.cssRules.length);
    return id;
}
"""

REMOVE_RULES = """
(id) => {
    const style = document.getElementById(id);
    if (style) style.remove();
    return !document.getElementById(id);
}
"""

SET_INLINE_STYLE = """
([selector, declarations]) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const previous = {};
    for (const [prop, value] of Object.entries(declarations)) {
        const old = el.style.getPropertyValue(prop);
        const priority = el.style.getPropertyPriority(prop);
        previous[prop] = old ? old + (priority ? ' !' + priority : '') : '';
        el.style.setProperty(prop, value, 'important');
    }
    return previous;
}
"""

RESTORE_INLINE_STYLE = """
([selector, previous]) => {
    const el = document.querySelector(selector);
    if (!el) return false;
    for (const [prop, value] of Object.entries(previous)) {
        if (!value) {
            el.style.removeProperty(prop);
        } else if (value.endsWith(' !important')) {
            el.style.setProperty(prop, value.slice(0, -11), 'important');
        } else {
            el.style.setProperty(prop, value);
        }
    }
    if (el.getAttribute('style') === '') el.removeAttribute('style');
    return true;
}
"""

SET_ATTRIBUTE = """
([selector, name, value]) => {
    const el = document.querySelector(selector);
    if (!el) return {found: false};
    const previous = el.getAttribute(name);
    el.setAttribute(name, value);
    return {found: true, previous: previous};
}
"""

REMOVE_ATTRIBUTE = """
([selector, name]) => {
    const el = document.querySelector(selector);
    if (!el) return false;
    el.removeAttribute(name);
    return true;
}
"""

COUNT_STYLE_RULES = """
() => {
    let count = 0;
    for (const sheet of document.styleSheets) {
        try { count += sheet.cssRules.length; } catch (e) { /* cross-origin sheet */ }
    }
    return count;
}
"""

VIEWPORT_SIZE = "() => ({width: window.innerWidth, height: window.innerHeight})"

# Installed on every document; forwards batches of mutation records to the
# exposed binding named by the argument.
MUTATION_OBSERVER = """
(bindingName) => {
    %s
    if (window.__a11yBotObserver || !window[bindingName]) return false;
    const interactive = %r;
    const isInteractive = (node) => node instanceof Element && node.matches(interactive);
    // Nodes the agent adds itself: focus anchors and fix style elements
    const isOwn = (node) => node instanceof Element && !!node.closest('[data-a11y-bot]');
    const observer = new MutationObserver((records) => {
        const payload = [];
        for (const record of records) {
            const target = record.target instanceof Element ? record.target : record.target.parentElement;
            if (!target || isOwn(target)) continue;
            const nodes = Array.from(record.addedNodes).concat(Array.from(record.removedNodes));
            const changed = nodes.filter(n => !isOwn(n));
            if (nodes.length > 0 && changed.length === 0) continue;
            payload.push({
                kind: record.type,
                selector: __a11ySelector(target),
                tag: target.tagName.toLowerCase(),
                interactive: isInteractive(target) || changed.some(isInteractive),
                attribute: record.attributeName,
                text_only: record.type === 'characterData' ||
                    (changed.length > 0 && changed.every(n => n.nodeType === Node.TEXT_NODE)),
            });
        }
        if (payload.length) window[bindingName](payload);
    });
    const start = () => observer.observe(document.documentElement, {
        childList: true, subtree: true, attributes: true, characterData: true,
    });
    if (document.documentElement) {
        start();
    } else {
        document.addEventListener('DOMContentLoaded', start, {once: true});
    }
    window.__a11yBotObserver = observer;
    return true;
}
""" % (SELECTOR_FN, INTERACTIVE_SELECTOR)
