"""Backtracking parsing toolkit shared by the line classifier and the
markup parser. Parsers are objects (or classes with a static ``parse``)
which take an Input and return a result, or None on failure without
consuming anything."""

END = chr(0)

NAME_CHARACTERS = ( "abcdefghijklmnopqrstuvwxyz"
    +"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    +"0123456789_" )

DIGITS = "0123456789"

WHITESPACE = " \t"


class Input(object):
    """Immutable wrapper for the input string. Holds a
    position in the input. Holds a reference to the Input
    it was branched from and the last Input branched from
    it."""

    _pos = 0
    _data = None
    _child = None
    _parent = None
    _offset = 0
    _lineno = 0

    def __init__(self,data,offset=0,lineno=0):
        self._pos = 0
        self._data = data+END
        self._child = None
        self._parent = None
        self._offset = offset
        self._lineno = lineno

    pos = property(lambda s: s._pos)
    lineno = property(lambda s: s._lineno)
    column = property(lambda s: s._pos+s._offset)

    def next(self):
        """Return the next symbol from the input string and
        advance the position"""
        s = self._data[self._pos]
        if s != END:
            self._pos += 1
        return s

    def at_end(self):
        return self._data[self._pos] == END

    def branch(self):
        """Return a new Input at the same position as this one,
        which holds a reference to this input"""
        b = Input.__new__(Input)
        b._data = self._data
        b._offset = self._offset
        b._lineno = self._lineno
        b._child = None
        b._pos = self._pos
        b._parent = self
        self._child = b
        return b

    def commit(self):
        """Advance the position of the parent Input to
        the same position as this one. In other words
        allow the advancement made to the branched input to
        take effect on the parent."""
        if self._parent is not None:
            self._parent._pos = self._pos

    def get_deepest_pos(self):
        """Returns the position of the last Input which descends
        from this one"""
        if self._child is not None:
            return self._child.get_deepest_pos()
        else:
            return self._pos


class Alternatives(object):
    """( A | B ) implementation"""

    _alts = None

    def __init__(self,*alts):
        self._alts = alts

    def parse(self,input):
        input = input.branch()
        for a in self._alts:
            r = a.parse(input)
            if r is not None:
                input.commit()
                return r
        return None


class OneOrMore(object):
    """A+ implementation"""

    _item = None

    def __init__(self,item):
        self._item = item

    def parse(self,input):
        input = input.branch()
        i = []
        r = self._item.parse(input)
        if r is None: return None
        i.append(r)
        while True:
            r = self._item.parse(input)
            if r is None: break
            i.append(r)
        input.commit()
        return i


class ZeroOrMore(object):
    """B* implementation"""

    _item = None

    def __init__(self,item):
        self._item = item

    def parse(self,input):
        input = input.branch()
        i = []
        while True:
            r = self._item.parse(input)
            if r is None: break
            i.append(r)
        input.commit()
        return i


class Optional(object):
    """A? implementation"""

    _item = None

    def __init__(self,item):
        self._item = item

    def parse(self,input):
        input = input.branch()
        r = self._item.parse(input)
        if r is None: return False
        input.commit()
        return r


class Sequence(object):
    """A B implementation"""

    _items = None

    def __init__(self,*items):
        self._items = items

    def parse(self,input):
        input = input.branch()
        i = []
        for j in self._items:
            r = j.parse(input)
            if r is None: return None
            i.append(r)
        input.commit()
        return i


class Not(object):
    """!A implementation"""

    _item = None

    def __init__(self,item):
        self._item = item

    def parse(self,input):
        input = input.branch()
        if self._item.parse(input) is not None:
            return None
        return False


class Char(object):
    """Parses a single symbol of those specified in
    the given string"""

    _chars = None

    def __init__(self,chars):
        self._chars = chars

    def parse(self,input):
        input = input.branch()
        c = input.next()
        if c == END or not c in self._chars: return None
        input.commit()
        return c


class CharExcept(object):
    """Parses a single symbol of any but those specified
    in the given string"""

    _chars = None

    def __init__(self,chars):
        self._chars = chars

    def parse(self,input):
        input = input.branch()
        c = input.next()
        if c == END or c in self._chars: return None
        input.commit()
        return c


class Literal(object):
    """Parses an exact string of symbols"""

    _text = None

    def __init__(self,text):
        self._text = text

    def parse(self,input):
        input = input.branch()
        for ch in self._text:
            if input.next() != ch: return None
        input.commit()
        return self._text


class Keyword(object):
    """Parses an exact word which is not immediately followed
    by another name character"""

    _word = None

    def __init__(self,word):
        self._word = word

    def parse(self,input):
        input = input.branch()
        if Literal(self._word).parse(input) is None: return None
        if Not(Char(NAME_CHARACTERS)).parse(input) is None: return None
        input.commit()
        return self._word


class LineWhitespace(object):

    @staticmethod
    def parse(input):
        input = input.branch()
        ws = OneOrMore(Char(WHITESPACE)).parse(input)
        if ws is None: return None
        input.commit()
        return "".join(ws)


class Name(object):
    """An identifier made of letters, digits and underscores"""

    _text = None
    text = property(lambda s: s._text)

    def __init__(self,text):
        self._text = text

    def __repr__(self):
        return "Name(%s)" % repr(self._text)

    @staticmethod
    def parse(input):
        input = input.branch()
        i = OneOrMore(Char(NAME_CHARACTERS)).parse(input)
        if i is None: return None
        input.commit()
        return Name("".join(i))


class End(object):
    """Succeeds only at the end of the input"""

    @staticmethod
    def parse(input):
        if not input.at_end(): return None
        return End()
