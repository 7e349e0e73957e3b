"""Story graph and the builder which assembles it from classified
lines.

The builder keeps an explicit stack of (depth, block) pairs. Choices
open a new block at their own depth; gathers close every block at
their depth or deeper and rejoin the block one level up."""

import collections
import logging
from . import lex
from . import markup as km
from .state import VariableStore


logger = logging.getLogger(__name__)

TERMINAL = "END"
TERMINAL_NAMES = ("END","DONE")
ROOT_KNOT = "$ROOT$"


TextLine = collections.namedtuple("TextLine","content tags glue_begin glue_end lineno")
Choice = collections.namedtuple("Choice",
    "ident depth sticky fallback conditions selection display tags content lineno")
Gather = collections.namedtuple("Gather","depth lineno")
Divert = collections.namedtuple("Divert","target condition lineno")


class ResolutionError(Exception):

    errors = None

    def __init__(self,errors):
        if isinstance(errors,str):
            errors = [errors]
        Exception.__init__(self,"\n".join(errors))
        self.errors = list(errors)


class Stitch(object):

    _name = None
    name = property(lambda s: s._name)
    _content = None
    content = property(lambda s: s._content)

    def __init__(self,name,content):
        self._name = name
        self._content = tuple(content)

    def __repr__(self):
        return "Stitch(%s,%s)" % (repr(self._name),repr(self._content))


class Knot(object):

    _name = None
    name = property(lambda s: s._name)
    _tags = None
    tags = property(lambda s: s._tags)
    _content = None
    content = property(lambda s: s._content)
    _stitches = None
    stitches = property(lambda s: collections.OrderedDict(s._stitches))
    stitch_names = property(lambda s: list(s._stitches))

    def __init__(self,name,tags,content,stitches=()):
        self._name = name
        self._tags = tuple(tags)
        self._content = tuple(content)
        self._stitches = collections.OrderedDict((s.name,s) for s in stitches)

    def __repr__(self):
        return "Knot(%s,%s,%s,%s)" % (repr(self._name),repr(self._tags),
            repr(self._content),repr(list(self._stitches.values())))

    def stitch(self,name):
        return self._stitches[name]

    def has_stitch(self,name):
        return name in self._stitches


class Story(object):
    """Immutable story graph. May be shared between any number of
    runtimes."""

    _knots = None
    knots = property(lambda s: collections.OrderedDict(s._knots))
    knot_names = property(lambda s: [n for n in s._knots if n != ROOT_KNOT])
    _variables = None
    variables = property(lambda s: s._variables)
    _tags = None
    tags = property(lambda s: s._tags)
    _start = None

    def __init__(self,knots,variables=None,tags=()):
        self._knots = collections.OrderedDict((k.name,k) for k in knots)
        if len(self._knots)==0:
            raise lex.ParseError("Story has no content")
        self._variables = VariableStore(variables)
        self._tags = tuple(tags)
        self._start = next(iter(self._knots))

    def __repr__(self):
        return "Story(%s)" % repr(list(self._knots.values()))

    def knot(self,name):
        return self._knots[name]

    def content(self,knot,stitch=None):
        k = self._knots[knot]
        return k.content if stitch is None else k.stitch(stitch).content

    def resolve_address(self,name,knot=None):
        """Returns the (knot, stitch) pair a name refers to from inside
        the given knot, or None"""
        if "." in name:
            kname,sname = name.split(".",1)
            if kname in self._knots and self._knots[kname].has_stitch(sname):
                return (kname,sname)
            return None
        if name in self._knots and name != ROOT_KNOT:
            return (name,None)
        if knot in self._knots and self._knots[knot].has_stitch(name):
            return (knot,name)
        return None

    def resolve_target(self,target,knot=None):
        """Like resolve_address, but also accepts the terminal target
        and maps a knot with no opening content to its first stitch"""
        if target in TERMINAL_NAMES:
            return TERMINAL
        address = self.resolve_address(target,knot)
        if address is None:
            return None
        kname,sname = address
        k = self._knots[kname]
        if sname is None and len(k.content)==0 and len(k.stitch_names)>0:
            return (kname,k.stitch_names[0])
        return address

    def has_name(self,name,knot=None):
        return name in self._variables or self.resolve_address(name,knot) is not None

    def start(self,knot=None,variables=None,**options):
        """Begins a new playthrough at the given knot (or knot.stitch),
        or at the top of the story"""
        from .run import Runtime
        if knot is None:
            address = (self._start,None)
        else:
            address = self.resolve_target(knot)
            if address is None or address == TERMINAL:
                raise ResolutionError("Cannot start at unknown knot '%s'" % knot)
        return Runtime(self,address,self.check_overrides(variables),**options)

    def restore(self,state,**options):
        """Resumes a playthrough from a state produced by
        Runtime.get_state"""
        from .run import Runtime
        return Runtime.restore(self,state,**options)

    def check_overrides(self,variables):
        variables = dict(variables or {})
        unknown = sorted(n for n in variables if n not in self._variables)
        if unknown:
            raise ResolutionError(["Unknown variable '%s'" % n for n in unknown])
        self._variables.with_overrides(variables)
        return variables


def address_key(address):
    """Visit count key for a (knot, stitch) address"""
    knot,stitch = address
    return knot if stitch is None else "%s.%s" % (knot,stitch)


class _KnotDraft(object):

    def __init__(self,name,lineno):
        self.name = name
        self.lineno = lineno
        self.tags = []
        self.content = []
        self.stitches = collections.OrderedDict()


class _ChoiceDraft(object):

    def __init__(self,line,tags,content):
        self.line = line
        self.tags = tags
        self.content = content

    def freeze(self):
        l = self.line
        return Choice(str(l.lineno),l.depth,l.sticky,l.fallback,l.conditions,
            l.selection,l.display,self.tags,_freeze(self.content),l.lineno)


def _freeze(block):
    return tuple(n.freeze() if isinstance(n,_ChoiceDraft) else n for n in block)


def _constant(expression,lineno):
    def lookup(name):
        raise lex.ParseError("Variable declarations must be constant, found '%s'" % name,
            lineno)
    try:
        return km.Evaluator(lookup).evaluate(expression)
    except km.EvaluationError as e:
        raise lex.ParseError(str(e),lineno)


class StoryBuilder(object):
    """Assembles classified lines, fed in source order, into a Story"""

    def __init__(self):
        self._variables = collections.OrderedDict()
        self._knots = collections.OrderedDict()
        self._root = _KnotDraft(ROOT_KNOT,0)
        self._knot = self._root
        self._stack = [(0,self._root.content)]
        self._pending_tags = []
        self._pending_lineno = None
        self._header_open = True

    def feed(self,line):
        if line is None:
            return
        getattr(self,"_add_%s" % type(line).__name__)(line)

    def build(self):
        """Returns the finished Story. Raises ResolutionError if any
        divert target or name cannot be resolved."""
        self._check_tags()
        knots = []
        if len(self._root.content)>0:
            knots.append(Knot(ROOT_KNOT,(),_freeze(self._root.content)))
        for draft in self._knots.values():
            knots.append(Knot(draft.name,draft.tags,_freeze(draft.content),
                [Stitch(n,_freeze(b)) for n,b in draft.stitches.items()]))
        story = Story(knots,self._variables,self._root.tags)
        validate(story)
        return story

    def _append(self,node):
        self._header_open = False
        self._stack[-1][1].append(node)

    def _check_tags(self):
        if self._pending_tags:
            raise lex.ParseError("Tags are not followed by any content",
                self._pending_lineno)

    def _take_tags(self,tags):
        tags = tuple(self._pending_tags)+tuple(tags)
        self._pending_tags = []
        self._pending_lineno = None
        return tags

    def _close_depth(self,depth):
        while self._stack[-1][0] >= depth:
            self._stack.pop()

    def _text_line(self,content,tags,lineno):
        begin,end = km.split_glue(content)
        return TextLine(content,tags,begin,end,lineno)

    def _add_VarDeclaration(self,line):
        if line.name in self._variables:
            raise lex.ParseError("Variable '%s' is declared twice" % line.name,
                line.lineno)
        self._variables[line.name] = _constant(line.expression,line.lineno)

    def _add_KnotHeader(self,line):
        self._check_tags()
        if line.name in self._knots:
            raise lex.ParseError("Knot '%s' is declared twice" % line.name,line.lineno)
        if line.name in TERMINAL_NAMES:
            raise lex.ParseError("'%s' is reserved and cannot name a knot" % line.name,
                line.lineno)
        self._knot = _KnotDraft(line.name,line.lineno)
        self._knots[line.name] = self._knot
        self._stack = [(0,self._knot.content)]
        self._header_open = True

    def _add_StitchHeader(self,line):
        self._check_tags()
        if self._knot is self._root:
            raise lex.ParseError("Stitch '%s' is not inside a knot" % line.name,
                line.lineno)
        if line.name in self._knot.stitches:
            raise lex.ParseError("Stitch '%s' is declared twice in knot '%s'" % (
                line.name,self._knot.name),line.lineno)
        block = []
        self._knot.stitches[line.name] = block
        self._stack = [(0,block)]
        self._header_open = False

    def _add_TagLine(self,line):
        if self._header_open:
            self._knot.tags.extend(line.tags)
        else:
            if not self._pending_tags:
                self._pending_lineno = line.lineno
            self._pending_tags.extend(line.tags)

    def _add_PlainLine(self,line):
        self._append(self._text_line(line.content,self._take_tags(line.tags),
            line.lineno))

    def _add_DivertLine(self,line):
        tags = self._take_tags(line.tags)
        if not km.is_blank(line.content) or tags:
            self._append(self._text_line(line.content,tags,line.lineno))
        self._append(Divert(line.target,line.condition,line.lineno))

    def _add_GatherLine(self,line):
        self._close_depth(line.depth)
        if self._stack[-1][0] != line.depth-1:
            raise lex.ParseError("Gather at depth %d has no enclosing choice at depth %d" % (
                line.depth,line.depth-1),line.lineno)
        self._append(Gather(line.depth,line.lineno))
        if line.rest is not None:
            self.feed(line.rest)

    def _add_ChoiceLine(self,line):
        self._close_depth(line.depth)
        if self._stack[-1][0] != line.depth-1:
            raise lex.ParseError("Choice at depth %d has no enclosing choice at depth %d" % (
                line.depth,line.depth-1),line.lineno)
        if any(True for _ in km.content_diverts(line.selection)):
            raise lex.ParseError("A divert cannot be part of the choice list text",
                line.lineno)
        tags = self._take_tags(line.tags)
        content = []
        if not km.is_blank(line.display):
            content.append(self._text_line(line.display,tags,line.lineno))
        if line.divert is not None:
            content.append(Divert(line.divert,None,line.lineno))
        self._append(_ChoiceDraft(line,tags,content))
        self._stack.append((line.depth,content))


def iter_nodes(block):
    """Yields every node in a block, descending into choice content"""
    for node in block:
        yield node
        if isinstance(node,Choice):
            for n in iter_nodes(node.content):
                yield n


def _node_references(node):
    """Returns the divert targets and expression names used by a node"""
    if isinstance(node,TextLine):
        return (list(km.content_diverts(node.content)),
            list(km.content_names(node.content)))
    elif isinstance(node,Choice):
        names = []
        for c in node.conditions:
            names.extend(km.iter_names(c))
        names.extend(km.content_names(node.selection))
        return [], names
    elif isinstance(node,Divert):
        names = list(km.iter_names(node.condition)) if node.condition is not None else []
        return [node.target], names
    return [], []


def validate(story):
    """Checks every divert target and expression name in the story,
    raising a single ResolutionError listing all failures"""
    errors = []
    for knot in story.knots.values():
        blocks = [knot.content]+[s.content for s in knot.stitches.values()]
        for block in blocks:
            for node in iter_nodes(block):
                targets,names = _node_references(node)
                for t in targets:
                    if story.resolve_target(t,knot.name) is None:
                        errors.append("Line %d: divert to unknown knot or stitch '%s'" % (
                            node.lineno,t))
                for n in names:
                    if not story.has_name(n,knot.name):
                        errors.append("Line %d: unknown variable or address '%s'" % (
                            node.lineno,n))
    if errors:
        raise ResolutionError(errors)


def read_story(text):
    """Parses story source text into a validated Story"""
    builder = StoryBuilder()
    for lineno,line in enumerate(lex.strip_comments(text),1):
        builder.feed(lex.classify(line,lineno))
    story = builder.build()
    logger.info("Read story with %d knots and %d variables",
        len(story.knot_names),len(story.variables))
    return story
