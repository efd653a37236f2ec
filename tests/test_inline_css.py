from site_cloner import (
    parse_html,
    rewrite_css_urls,
    rewrite_inline_css,
    serialize_html,
    unescape_css,
)

BASE = "https://example.com/"


def test_style_element_is_rewritten_double_quoted():
    soup = parse_html("<style>body{background:url('/img/bg.png')}</style>")
    assert rewrite_inline_css(soup, BASE) == 1
    assert 'url("img/bg.png")' in serialize_html(soup)


def test_style_attribute_is_rewritten():
    soup = parse_html('<div style="background-image: url(img/hero.jpg)">hi</div>')
    rewrite_inline_css(soup, "https://example.com/pages/")
    assert soup.div["style"] == 'background-image: url("pages/img/hero.jpg")'


def test_all_quoting_styles():
    css = "a{b:url(x.png)} c{d:url( 'y.png' )} e{f:URL(\"z.png\")}"
    out = rewrite_css_urls(css, BASE)
    assert out == 'a{b:url("x.png")} c{d:url("y.png")} e{f:url("z.png")}'


def test_absolute_and_cross_host_urls_map_by_path():
    out = rewrite_css_urls("x{y:url(https://cdn.example.net/f/a.woff2)}", BASE)
    assert out == 'x{y:url("f/a.woff2")}'


def test_unresolvable_references_are_kept():
    css = 'a{b:url(data:image/png;base64,AAA=)} c{d:url(#grad)} e{f:url()} g{h:url("http://[::1/x")}'
    assert rewrite_css_urls(css, BASE) == css


def test_escape_attempt_is_kept():
    css = "a{b:url(https://example.com/../../x.png)}"
    assert rewrite_css_urls(css, BASE) == css


def test_rewritten_path_is_percent_encoded():
    out = rewrite_css_urls("a{b:url('img/my pic.png')}", BASE)
    assert out == 'a{b:url("img/my%20pic.png")}'


def test_css_text_outside_url_is_untouched():
    soup = parse_html("<style>a > b { color: red }</style>")
    assert rewrite_inline_css(soup, BASE) == 0
    assert "a > b" in serialize_html(soup)


def test_unescape_css():
    assert unescape_css(r"\31 .png") == "1.png"
    assert unescape_css(r"a\(b\).png") == "a(b).png"
    assert unescape_css(r"\000041x") == "Ax"
    assert unescape_css(r"\0 ") == "�"


def test_escaped_references_are_decoded_before_resolving():
    out = rewrite_css_urls(r"a{b:url('img/\31 .png')} c{d:url('img/a\'b.png')}", BASE)
    assert out == 'a{b:url("img/1.png")} c{d:url("img/a%27b.png")}'
