"""Classifies single lines of story source. Each line becomes exactly
one of the classified line tuples below; inline markup is parsed into
content parts but nothing is evaluated here."""

import collections
import re
from .grammar import (Input, Alternatives, OneOrMore, ZeroOrMore, Optional,
    Sequence, Not, Char, CharExcept, Literal, Keyword, LineWhitespace, Name,
    End)
from . import markup as km


STICKY_MARKER = "+"
ONCE_MARKER = "*"
GATHER_MARKER = "-"
TAG_MARKER = "#"

_TODO_LINE = re.compile(r"^\s*TODO:")


class ParseError(Exception):

    message = None
    lineno = None

    def __init__(self,message,lineno=None):
        Exception.__init__(self,
            "Line %d: %s" % (lineno,message) if lineno else message)
        self.message = message
        self.lineno = lineno


def strip_comments(text):
    """Splits source text into lines with line and block comments
    and TODO lines blanked out. Line numbering is preserved."""
    lines = []
    in_block = False
    for raw in text.splitlines():
        out = []
        i = 0
        while i < len(raw):
            if in_block:
                end = raw.find("*/",i)
                if end == -1: break
                in_block = False
                i = end+2
            elif raw.startswith("//",i):
                break
            elif raw.startswith("/*",i):
                in_block = True
                i += 2
            else:
                out.append(raw[i])
                i += 1
        line = "".join(out)
        if _TODO_LINE.match(line):
            line = ""
        lines.append(line)
    return lines


def _blank(parts):
    return km.is_blank(parts)


def _split_divert(parts,lineno):
    """Separates a trailing divert from content. Returns the content
    before it and the target, or None if there is no divert."""
    indexes = [i for i,p in enumerate(parts) if isinstance(p,km.InlineDivert)]
    if len(indexes)==0:
        return parts, None
    i = indexes[0]
    if len(indexes)>1 or not _blank(parts[i+1:]):
        raise ParseError("Nothing may follow a divert on the same line",lineno)
    return parts[:i], parts[i].target


class Tags(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        tags = ZeroOrMore(Sequence(Char(TAG_MARKER),
            ZeroOrMore(CharExcept(TAG_MARKER)))).parse(input)
        input.commit()
        return tuple(t for t in ("".join(t[1]).strip() for t in tags) if t)


class VarDeclaration(collections.namedtuple("VarDeclaration","name expression lineno")):

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Optional(LineWhitespace),Keyword("VAR"),LineWhitespace,
            Name,Optional(LineWhitespace),Char("="),km.Expression,End).parse(input)
        if r is None: return None
        input.commit()
        return VarDeclaration(r[3].text,r[6],input.lineno)


class KnotHeader(collections.namedtuple("KnotHeader","name lineno")):

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Optional(LineWhitespace),Literal("=="),ZeroOrMore(Char("=")),
            Optional(LineWhitespace),Name,Optional(LineWhitespace),
            ZeroOrMore(Char("=")),Optional(LineWhitespace),End).parse(input)
        if r is None: return None
        input.commit()
        return KnotHeader(r[4].text,input.lineno)


class StitchHeader(collections.namedtuple("StitchHeader","name lineno")):

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Optional(LineWhitespace),Char("="),Not(Char("=")),
            Optional(LineWhitespace),Name,Optional(LineWhitespace),End).parse(input)
        if r is None: return None
        input.commit()
        return StitchHeader(r[4].text,input.lineno)


class ChoiceMarkers(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        run = OneOrMore(Sequence(Char(ONCE_MARKER+STICKY_MARKER),
            Optional(LineWhitespace))).parse(input)
        if run is None: return None
        input.commit()
        return "".join(r[0] for r in run)


class ChoiceCondition(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Optional(LineWhitespace),Char("{"),km.Expression,
            Char("}")).parse(input)
        if r is None: return None
        input.commit()
        return r[2]


class ChoiceLine(collections.namedtuple("ChoiceLine",
        "depth sticky fallback conditions selection display divert tags lineno")):
    """Choice marker run, optional conditions, then text where a
    bracketed part only appears in the choice list and the text after
    it only appears once chosen"""

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        lineno = input.lineno
        Optional(LineWhitespace).parse(input)
        markers = ChoiceMarkers.parse(input)
        if markers is None: return None
        conditions = ZeroOrMore(ChoiceCondition).parse(input)
        before = km.Content("[]"+TAG_MARKER).parse(input)
        bracket = Optional(Sequence(Char("["),km.Content("[]"+TAG_MARKER),
            Char("]"))).parse(input)
        after = km.Content("[]"+TAG_MARKER).parse(input)
        tags = Tags.parse(input)
        if End.parse(input) is None: return None
        input.commit()

        if len(set(markers))>1:
            raise ParseError("Choice markers cannot mix '%s' and '%s'" % (
                ONCE_MARKER,STICKY_MARKER),lineno)

        inside = bracket[1] if bracket is not False else ()
        if any(isinstance(p,km.InlineDivert) for p in inside):
            raise ParseError("A divert cannot be part of the choice list text",lineno)
        if bracket is not False:
            if any(isinstance(p,km.InlineDivert) for p in before):
                raise ParseError("Nothing may follow a divert on the same line",lineno)
            after, divert = _split_divert(after,lineno)
        else:
            before, divert = _split_divert(before,lineno)

        selection = km._merge_text(before+inside)
        display = km._merge_text(km.rename_spans(before,"shown")+after)
        return ChoiceLine(len(markers),markers[0]==STICKY_MARKER,_blank(selection),
            tuple(conditions),selection,display,divert,tags,lineno)


class GatherMarkers(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        run = OneOrMore(Sequence(Char(GATHER_MARKER),Not(Char(">")),
            Optional(LineWhitespace))).parse(input)
        if run is None: return None
        input.commit()
        return "".join(r[0] for r in run)


class GatherLine(collections.namedtuple("GatherLine","depth rest lineno")):

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        lineno = input.lineno
        Optional(LineWhitespace).parse(input)
        markers = GatherMarkers.parse(input)
        if markers is None: return None
        if End.parse(input) is not None:
            rest = None
        else:
            rest = Alternatives(ChoiceLine,PlainLine).parse(input)
            if rest is None: return None
        input.commit()
        return GatherLine(len(markers),rest,lineno)


class TagLine(collections.namedtuple("TagLine","tags lineno")):

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        Optional(LineWhitespace).parse(input)
        tags = Tags.parse(input)
        if End.parse(input) is None: return None
        input.commit()
        return TagLine(tags,input.lineno)


class DivertLine(collections.namedtuple("DivertLine","content target condition tags lineno")):

    __slots__ = ()


class PlainLine(collections.namedtuple("PlainLine","content tags lineno")):
    """Text line, possibly ending in a divert. A line holding nothing but
    a conditional divert becomes a guarded divert."""

    __slots__ = ()

    @staticmethod
    def parse(input):
        input = input.branch()
        lineno = input.lineno
        content = km.Content(TAG_MARKER).parse(input)
        tags = Tags.parse(input)
        if End.parse(input) is None: return None
        input.commit()

        before, target = _split_divert(content,lineno)
        if target is not None:
            return DivertLine(before,target,None,tags,lineno)

        solid = [p for p in content if not _blank((p,))]
        if (len(solid)==1 and isinstance(solid[0],km.Conditional)
                and len(solid[0].otherwise)==0):
            then = [p for p in solid[0].then if not _blank((p,))]
            if len(then)==1 and isinstance(then[0],km.InlineDivert):
                return DivertLine((),then[0].target,solid[0].condition,tags,lineno)

        return PlainLine(content,tags,lineno)


class _Prefix(object):
    """Recognises the start of a kind of line without consuming it"""

    _item = None

    def __init__(self,item):
        self._item = Sequence(Optional(LineWhitespace),item)

    def parse(self,input):
        if self._item.parse(input.branch()) is None: return None
        return True


_LINE_KINDS = [
    (_Prefix(Sequence(Keyword("VAR"),LineWhitespace)),VarDeclaration,"variable declaration"),
    (_Prefix(Literal("==")),KnotHeader,"knot header"),
    (_Prefix(Char("=")),StitchHeader,"stitch header"),
    (_Prefix(Char(ONCE_MARKER+STICKY_MARKER)),ChoiceLine,"choice"),
    (_Prefix(Sequence(Char(GATHER_MARKER),Not(Char(">")))),GatherLine,"gather"),
    (_Prefix(Char(TAG_MARKER)),TagLine,"tag line"),
    (_Prefix(Optional(CharExcept(""))),PlainLine,"line"),
]


def classify(line,lineno=0):
    """Returns the classified form of one source line, or None for a
    blank line. Raises ParseError for a malformed line."""
    if not line.strip():
        return None
    input = Input(line,0,lineno)
    for prefix,parser,description in _LINE_KINDS:
        if prefix.parse(input) is None:
            continue
        result = parser.parse(input)
        if result is None:
            p = input.get_deepest_pos()
            raise ParseError("Invalid %s near '%s'" % (description,line[p:p+40]),lineno)
        return result
    raise ParseError("Unrecognised line '%s'" % line,lineno)
