"""Inline markup found in story text: glue, diverts, variable
interpolation, conditional spans and alternative spans, together
with the small expression language used inside braces.

Parsing produces tuples of immutable parts which are resolved to
final text each time a line is reached."""

import collections
import operator
import random
import re
from .grammar import (Alternatives, OneOrMore, ZeroOrMore, Optional,
    Sequence, Not, Char, CharExcept, Literal, Keyword, LineWhitespace,
    Name, NAME_CHARACTERS, DIGITS)


SEQUENCE = "sequence"
CYCLE = "cycle"
ONCE = "once"
SHUFFLE = "shuffle"

MODE_PREFIXES = { "&": CYCLE, "!": ONCE, "~": SHUFFLE }

RESERVED_WORDS = ("and","or","not","true","false")


# Content parts
Text = collections.namedtuple("Text","text")
Glue = collections.namedtuple("Glue","")
InlineDivert = collections.namedtuple("InlineDivert","target")
Interpolation = collections.namedtuple("Interpolation","expression")
Conditional = collections.namedtuple("Conditional","condition then otherwise")
AlternativeSpan = collections.namedtuple("AlternativeSpan","ident mode branches")

# Expression nodes
Value = collections.namedtuple("Value","value")
NameRef = collections.namedtuple("NameRef","name")
UnaryOp = collections.namedtuple("UnaryOp","op operand")
BinaryOp = collections.namedtuple("BinaryOp","op left right")


class EvaluationError(Exception):
    pass


def _merge_text(parts):
    merged = []
    for p in parts:
        if isinstance(p,Text) and merged and isinstance(merged[-1],Text):
            merged[-1] = Text(merged[-1].text+p.text)
        else:
            merged.append(p)
    return tuple(merged)


class TextRun(object):
    """Plain characters up to any of the given stop characters
    or the start of a markup construct"""

    _stops = None

    def __init__(self,stops):
        self._stops = stops

    def parse(self,input):
        input = input.branch()
        text = OneOrMore(Alternatives(
                CharExcept(self._stops+"\\{}<-"),
                Sequence(Char("<"),Not(Char(">"))),
                Sequence(Char("-"),Not(Char(">"))))).parse(input)
        if text is None: return None
        input.commit()
        return Text("".join(
                [t[0] if isinstance(t,list) else t for t in text]))


class Escape(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        if Char("\\").parse(input) is None: return None
        c = CharExcept("").parse(input)
        if c is None: return None
        input.commit()
        return Text(c)


class GlueMarker(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        if Literal("<>").parse(input) is None: return None
        input.commit()
        return Glue()


class Target(object):
    """Divert target: a name, optionally qualified with a stitch name"""

    @staticmethod
    def parse(input):
        input = input.branch()
        first = Name.parse(input)
        if first is None: return None
        second = Optional(Sequence(Char("."),Name)).parse(input)
        input.commit()
        if second is not False:
            return "%s.%s" % (first.text,second[1].text)
        return first.text


class DivertMarker(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        if Literal("->").parse(input) is None: return None
        Optional(LineWhitespace).parse(input)
        target = Target.parse(input)
        if target is None: return None
        input.commit()
        return InlineDivert(target)


class Content(object):
    """A run of text and markup, ending before any of the given
    stop characters, an unmatched closing brace or the end of
    input"""

    _stops = None

    def __init__(self,stops=""):
        self._stops = stops

    def parse(self,input):
        input = input.branch()
        parts = ZeroOrMore(Alternatives(Escape,GlueMarker,DivertMarker,
                Brace,TextRun(self._stops))).parse(input)
        input.commit()
        return _merge_text(parts)


class Brace(object):
    """A braced span. Tries, in order, a conditional, an alternative
    span and finally a plain interpolated expression."""

    @staticmethod
    def parse(input):
        input = input.branch()
        ident = "%d:%d" % (input.lineno,input.column)
        if Char("{").parse(input) is None: return None
        span = Alternatives(ConditionalBody,AlternativeBody,
                InterpolationBody).parse(input)
        if span is None: return None
        input.commit()
        if isinstance(span,AlternativeSpan):
            span = span._replace(ident=ident)
        return span


class ConditionalBody(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        condition = Expression.parse(input)
        if condition is None: return None
        if Char(":").parse(input) is None: return None
        then = Content("|").parse(input)
        otherwise = Optional(Sequence(Char("|"),Content("|"))).parse(input)
        if Char("}").parse(input) is None: return None
        input.commit()
        return Conditional(condition,then,
            otherwise[1] if otherwise is not False else ())


class AlternativeBody(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        prefix = Optional(Char("".join(MODE_PREFIXES))).parse(input)
        first = Content("|").parse(input)
        rest = ZeroOrMore(Sequence(Char("|"),Content("|"))).parse(input)
        if prefix is False and len(rest)==0: return None
        if Char("}").parse(input) is None: return None
        input.commit()
        mode = MODE_PREFIXES[prefix] if prefix is not False else SEQUENCE
        return AlternativeSpan(None,mode,(first,)+tuple(r[1] for r in rest))


class InterpolationBody(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        expression = Expression.parse(input)
        if expression is None: return None
        if Char("}").parse(input) is None: return None
        input.commit()
        return Interpolation(expression)


class Token(object):
    """Wraps a parser, skipping whitespace either side of it"""

    _item = None

    def __init__(self,item):
        self._item = item

    def parse(self,input):
        input = input.branch()
        Optional(LineWhitespace).parse(input)
        r = self._item.parse(input)
        if r is None: return None
        Optional(LineWhitespace).parse(input)
        input.commit()
        return r


class Operator(object):
    """Parses an operator token, returning its canonical symbol"""

    _item = None
    _symbol = None

    def __init__(self,item,symbol):
        self._item = Token(item)
        self._symbol = symbol

    def parse(self,input):
        input = input.branch()
        if self._item.parse(input) is None: return None
        input.commit()
        return self._symbol


class BinaryChain(object):
    """Left associative chain of operands joined by operators"""

    _operand = None
    _operators = None
    _repeat = True

    def __init__(self,operand,operators,repeat=True):
        self._operand = operand
        self._operators = Alternatives(*operators)
        self._repeat = repeat

    def parse(self,input):
        input = input.branch()
        left = self._operand.parse(input)
        if left is None: return None
        while True:
            branch = input.branch()
            op = self._operators.parse(branch)
            if op is None: break
            right = self._operand.parse(branch)
            if right is None: break
            branch.commit()
            left = BinaryOp(op,left,right)
            if not self._repeat: break
        input.commit()
        return left


class NumberLiteral(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        whole = OneOrMore(Char(DIGITS)).parse(input)
        if whole is None: return None
        frac = Optional(Sequence(Char("."),OneOrMore(Char(DIGITS)))).parse(input)
        if Not(Char(NAME_CHARACTERS)).parse(input) is None: return None
        input.commit()
        if frac is not False:
            return Value(float("%s.%s" % ("".join(whole),"".join(frac[1]))))
        return Value(int("".join(whole)))


class StringLiteral(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        if Char('"').parse(input) is None: return None
        chars = ZeroOrMore(Alternatives(
                Sequence(Char("\\"),CharExcept("")),
                CharExcept('"'))).parse(input)
        if Char('"').parse(input) is None: return None
        input.commit()
        return Value("".join([c[1] if isinstance(c,list) else c for c in chars]))


class BoolLiteral(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        word = Alternatives(Keyword("true"),Keyword("false")).parse(input)
        if word is None: return None
        input.commit()
        return Value(word == "true")


class Address(object):
    """Variable name or knot/stitch address"""

    @staticmethod
    def parse(input):
        input = input.branch()
        if Alternatives(*[Keyword(w) for w in RESERVED_WORDS]).parse(input) is not None:
            return None
        target = Target.parse(input)
        if target is None: return None
        input.commit()
        return NameRef(target)


class Parenthesised(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Char("("),Expression,Char(")")).parse(input)
        if r is None: return None
        input.commit()
        return r[1]


class Atom(object):

    @staticmethod
    def parse(input):
        return Token(Alternatives(NumberLiteral,StringLiteral,BoolLiteral,
            Address,Parenthesised)).parse(input)


class Unary(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        neg = Sequence(Token(Char("-")),Unary).parse(input)
        if neg is not None:
            input.commit()
            return UnaryOp("neg",neg[1])
        r = Atom.parse(input)
        if r is None: return None
        input.commit()
        return r


Product = BinaryChain(Unary,[
    Operator(Char("*"),"*"),
    Operator(Char("/"),"/"),
    Operator(Char("%"),"%") ])

Sum = BinaryChain(Product,[
    Operator(Char("+"),"+"),
    Operator(Sequence(Char("-"),Not(Char(">"))),"-") ])

Comparison = BinaryChain(Sum,[
    Operator(Literal("=="),"=="),
    Operator(Literal("!="),"!="),
    Operator(Literal("<="),"<="),
    Operator(Literal(">="),">="),
    Operator(Char("<"),"<"),
    Operator(Char(">"),">") ], repeat=False)


class Negation(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        r = Sequence(Operator(Alternatives(Keyword("not"),
                Sequence(Char("!"),Not(Char("=")))),"not"),Negation).parse(input)
        if r is not None:
            input.commit()
            return UnaryOp("not",r[1])
        r = Comparison.parse(input)
        if r is None: return None
        input.commit()
        return r


Conjunction = BinaryChain(Negation,[
    Operator(Keyword("and"),"and"),
    Operator(Literal("&&"),"and") ])

Disjunction = BinaryChain(Conjunction,[
    Operator(Keyword("or"),"or"),
    Operator(Literal("||"),"or") ])


class Expression(object):

    @staticmethod
    def parse(input):
        return Disjunction.parse(input)


def iter_parts(parts):
    """Yields every part in the given content, descending into
    conditional and alternative branches"""
    for p in parts:
        yield p
        if isinstance(p,Conditional):
            for q in iter_parts(p.then+p.otherwise):
                yield q
        elif isinstance(p,AlternativeSpan):
            for b in p.branches:
                for q in iter_parts(b):
                    yield q


def rename_spans(parts,suffix):
    """Returns a copy of the given content whose alternative spans have
    their own idents, so they keep separate visit counts"""
    renamed = []
    for p in parts:
        if isinstance(p,Conditional):
            p = p._replace(then=rename_spans(p.then,suffix),
                otherwise=rename_spans(p.otherwise,suffix))
        elif isinstance(p,AlternativeSpan):
            p = p._replace(ident="%s/%s" % (p.ident,suffix),
                branches=tuple(rename_spans(b,suffix) for b in p.branches))
        renamed.append(p)
    return tuple(renamed)


def iter_names(expression):
    if isinstance(expression,NameRef):
        yield expression.name
    elif isinstance(expression,UnaryOp):
        for n in iter_names(expression.operand):
            yield n
    elif isinstance(expression,BinaryOp):
        for n in iter_names(expression.left):
            yield n
        for n in iter_names(expression.right):
            yield n


def content_names(parts):
    for p in iter_parts(parts):
        if isinstance(p,Interpolation):
            for n in iter_names(p.expression):
                yield n
        elif isinstance(p,Conditional):
            for n in iter_names(p.condition):
                yield n


def content_diverts(parts):
    for p in iter_parts(parts):
        if isinstance(p,InlineDivert):
            yield p.target


def is_blank(parts):
    return all(isinstance(p,Text) and not p.text.strip() for p in parts)


def split_glue(parts):
    """Returns whether glue opens and whether it closes the content,
    ignoring whitespace either side"""
    solid = [p for p in parts if not (isinstance(p,Text) and not p.text.strip())]
    begin = len(solid)>0 and isinstance(solid[0],Glue)
    end = len(solid)>0 and isinstance(solid[-1],Glue)
    return begin, end


def normalise(text,glue_begin=False,glue_end=False):
    """Collapses runs of whitespace and trims the ends that are
    not glued"""
    text = re.sub(r"\s+"," ",text)
    if not glue_begin:
        text = text.lstrip()
    if not glue_end:
        text = text.rstrip()
    return text


def stringify(value):
    if isinstance(value,bool):
        return "true" if value else "false"
    return str(value)


def _add(left,right):
    if isinstance(left,str) or isinstance(right,str):
        return stringify(left)+stringify(right)
    return left+right


def _divide(left,right):
    if isinstance(left,int) and isinstance(right,int):
        if right == 0: raise ZeroDivisionError("division by zero")
        return int(left/right)
    return left/right


_OPERATORS = {
    "+": _add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _divide,
    "%": operator.mod,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class Evaluator(object):
    """Evaluates expressions, looking names up through the given
    callable"""

    _lookup = None

    def __init__(self,lookup):
        self._lookup = lookup

    def evaluate(self,expression):
        return getattr(self,"_eval_%s" % type(expression).__name__)(expression)

    def test(self,expression):
        return bool(self.evaluate(expression))

    def _eval_Value(self,e):
        return e.value

    def _eval_NameRef(self,e):
        return self._lookup(e.name)

    def _eval_UnaryOp(self,e):
        value = self.evaluate(e.operand)
        if e.op == "not":
            return not value
        if isinstance(value,str) or isinstance(value,bool):
            raise EvaluationError("Cannot negate %s" % repr(value))
        return -value

    def _eval_BinaryOp(self,e):
        if e.op == "and":
            return self.test(e.left) and self.test(e.right)
        if e.op == "or":
            return self.test(e.left) or self.test(e.right)
        left = self.evaluate(e.left)
        right = self.evaluate(e.right)
        try:
            return _OPERATORS[e.op](left,right)
        except (TypeError,ZeroDivisionError) as ex:
            raise EvaluationError("Cannot evaluate %s %s %s: %s" % (
                repr(left),e.op,repr(right),ex))


def pick_alternative(mode,count,size,ident,seed=0):
    """Returns the branch index to show on the given visit, or None
    if nothing should be shown"""
    if mode == SEQUENCE:
        return min(count,size-1)
    elif mode == CYCLE:
        return count % size
    elif mode == ONCE:
        return count if count < size else None
    elif mode == SHUFFLE:
        # each full pass shows every branch once, in a seeded order
        order = list(range(size))
        random.Random("%s:%s:%d" % (seed,ident,count//size)).shuffle(order)
        return order[count % size]
    raise ValueError("Unknown alternative mode %s" % repr(mode))


class Resolver(object):
    """Resolves content to final text for one output unit. Visits to
    alternative spans are staged and only reach the sequence state
    when commit is called."""

    _evaluator = None
    _staged = None
    _seed = 0

    def __init__(self,lookup,sequences,seed=0):
        self._evaluator = Evaluator(lookup)
        self._staged = sequences.stage()
        self._seed = seed

    def test(self,condition):
        return self._evaluator.test(condition)

    def resolve(self,parts):
        """Returns the resolved text and the first divert target
        reached, if any"""
        out = []
        divert = self._resolve_parts(parts,out)
        return "".join(out), divert

    def commit(self):
        self._staged.commit()

    def _resolve_parts(self,parts,out):
        for p in parts:
            divert = getattr(self,"_resolve_%s" % type(p).__name__)(p,out)
            if divert is not None:
                return divert
        return None

    def _resolve_Text(self,part,out):
        out.append(part.text)

    def _resolve_Glue(self,part,out):
        pass

    def _resolve_InlineDivert(self,part,out):
        return part.target

    def _resolve_Interpolation(self,part,out):
        out.append(stringify(self._evaluator.evaluate(part.expression)))

    def _resolve_Conditional(self,part,out):
        branch = part.then if self.test(part.condition) else part.otherwise
        return self._resolve_parts(branch,out)

    def _resolve_AlternativeSpan(self,part,out):
        count = self._staged.visit(part.ident)
        # renamed copies shuffle in the same order as the span they copy
        index = pick_alternative(part.mode,count,len(part.branches),
            part.ident.partition("/")[0],self._seed)
        if index is None:
            return None
        return self._resolve_parts(part.branches[index],out)
