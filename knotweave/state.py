import copy


SCALAR_TYPES = (bool,int,float,str)


class VariableStore(object):
    """Read-only mapping of variable names to scalar values"""

    _values = None

    def __init__(self,values=None):
        self._values = dict(values or {})
        for name,value in self._values.items():
            if not isinstance(value,SCALAR_TYPES):
                raise ValueError("Variable '%s' has unsupported value %s" % (
                    name,repr(value)))

    def __repr__(self):
        return "VariableStore(%s)" % repr(self._values)

    def __getitem__(self,name):
        return self._values[name]

    def __contains__(self,name):
        return name in self._values

    def __iter__(self):
        return iter(sorted(self._values))

    def __len__(self):
        return len(self._values)

    def __eq__(self,other):
        return isinstance(other,VariableStore) and self._values == other._values

    def with_overrides(self,overrides):
        """Returns a new store with the given values replacing
        declared ones. Every name must already be declared."""
        values = dict(self._values)
        for name,value in (overrides or {}).items():
            if name not in values:
                raise KeyError(name)
            values[name] = value
        return VariableStore(values)


class StagedVisits(object):
    """Visit increments waiting to be committed to a SequenceState"""

    _state = None
    _pending = None

    def __init__(self,state):
        self._state = state
        self._pending = {}

    pending = property(lambda s: dict(s._pending))

    def count(self,ident):
        return self._state.count(ident)+self._pending.get(ident,0)

    def visit(self,ident):
        """Records a visit and returns the count before it"""
        n = self.count(ident)
        self._pending[ident] = self._pending.get(ident,0)+1
        return n

    def commit(self):
        self._state.commit(self._pending)
        self._pending = {}


class SequenceState(object):
    """Visit counts for alternative spans, keyed by span identity.
    Counts only ever increase."""

    _counts = None

    def __init__(self,counts=None):
        self._counts = {}
        for ident,n in (counts or {}).items():
            if not isinstance(n,int) or isinstance(n,bool) or n < 0:
                raise ValueError("Invalid visit count %s for %s" % (repr(n),ident))
            self._counts[ident] = n

    def __repr__(self):
        return "SequenceState(%s)" % repr(self._counts)

    def count(self,ident):
        return self._counts.get(ident,0)

    def stage(self):
        return StagedVisits(self)

    def commit(self,increments):
        for ident,n in increments.items():
            if n < 0:
                raise ValueError("Visit counts cannot decrease")
            self._counts[ident] = self._counts.get(ident,0)+n

    def to_dict(self):
        return copy.copy(self._counts)
