class Options(object):
    """Knobs of a recovery run.

    Class attributes hold the defaults, any keyword left to None keeps them.
    """

    show_progress = True
    apply_signatures = False
    define_symbols = True
    vtable_prefix = "vtable_"
    confidence = 255

    def __init__(self, show_progress=None, apply_signatures=None, define_symbols=None,
                 vtable_prefix=None, confidence=None):
        cls = type(self)
        if show_progress is None:
            show_progress = cls.show_progress
        if apply_signatures is None:
            apply_signatures = cls.apply_signatures
        if define_symbols is None:
            define_symbols = cls.define_symbols
        if vtable_prefix is None:
            vtable_prefix = cls.vtable_prefix
        if confidence is None:
            confidence = cls.confidence

        self.show_progress = show_progress
        self.apply_signatures = apply_signatures
        self.define_symbols = define_symbols
        self.vtable_prefix = vtable_prefix
        if not 0 <= confidence <= 255:
            confidence = cls.confidence
        self.confidence = confidence

    def __repr__(self):
        return "<Options show_progress=%s apply_signatures=%s define_symbols=%s vtable_prefix=%s confidence=%d>" % (
            self.show_progress, self.apply_signatures, self.define_symbols,
            self.vtable_prefix, self.confidence)
